#!/usr/bin/env python3
"""Export the CRM webhook contract for chat channel registration.

Usage:
    python scripts/export_openapi_spec.py [output.json] [--full]

By default only the /webhooks/amocrm routes and the schemas they reference
are written, which is what the CRM side needs when the channel's webhook
URL is registered. --full dumps the whole gateway document instead.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Set

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from wabridge.main import app

WEBHOOK_PREFIX = "/webhooks/amocrm"
REF_PREFIX = "#/components/schemas/"


def _collect_refs(node: Any, found: Set[str]) -> None:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith(REF_PREFIX):
            found.add(ref[len(REF_PREFIX):])
        for value in node.values():
            _collect_refs(value, found)
    elif isinstance(node, list):
        for value in node:
            _collect_refs(value, found)


def webhook_contract(openapi_schema: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a full OpenAPI document to the CRM webhook routes and their schemas."""
    paths = {
        path: item
        for path, item in openapi_schema.get("paths", {}).items()
        if path.startswith(WEBHOOK_PREFIX)
    }
    all_schemas = openapi_schema.get("components", {}).get("schemas", {})

    needed: Set[str] = set()
    _collect_refs(paths, needed)
    # Schemas can reference each other
    pending = list(needed)
    while pending:
        nested: Set[str] = set()
        _collect_refs(all_schemas.get(pending.pop(), {}), nested)
        for name in nested - needed:
            needed.add(name)
            pending.append(name)

    contract = {
        "openapi": openapi_schema.get("openapi"),
        "info": {**openapi_schema.get("info", {}), "title": f"{app.title}: CRM webhook"},
        "paths": paths,
    }
    if needed:
        contract["components"] = {
            "schemas": {name: all_schemas[name] for name in sorted(needed) if name in all_schemas}
        }
    return contract


def export_openapi_spec(output_path: str = "crm_webhook.json", full: bool = False) -> Path:
    """Write the webhook contract (or the full document) to a JSON file."""
    openapi_schema = app.openapi()
    document = openapi_schema if full else webhook_contract(openapi_schema)

    output_file = Path(output_path)
    with open(output_file, "w") as f:
        json.dump(document, f, indent=2)

    print(f"Exported {len(document['paths'])} path(s) to: {output_file.absolute()}")
    return output_file


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Export the CRM webhook OpenAPI contract")
    parser.add_argument("output", nargs="?", default="crm_webhook.json")
    parser.add_argument("--full", action="store_true", help="Export every route, not only the CRM webhook")
    args = parser.parse_args()

    export_openapi_spec(args.output, full=args.full)
