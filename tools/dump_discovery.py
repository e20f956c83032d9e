"""Dump what the Alexa account exposes to discovery.

Prints the account, the flat device list, the smart-home endpoint graph and
the favorites, with the identifiers the gateway would extract from each.
Read-only; useful when a light or Echo is not being resolved.

Usage:
    python tools/dump_discovery.py
    python tools/dump_discovery.py --raw        # full JSON records
    python tools/dump_discovery.py --category LIGHT
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

# Ensure project root is on sys.path when running from tools/
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from alexa_errors import AlexaError, MissingIdentifier  # noqa: E402
from alexa_gateway import AlexaGateway  # noqa: E402
from device_resolver import (  # noqa: E402
    extract_appliance_id,
    extract_entity_id,
    extract_serial_type,
    filter_by_category,
    friendly_name,
    primary_category,
)


def _ident(fn, device: dict) -> str | None:
    try:
        v = fn(device)
    except MissingIdentifier:
        return None
    return getattr(v, "value", None) or f"{v.serial}@{v.device_type}"


def _describe(device: dict) -> dict:
    return {
        "name": friendly_name(device),
        "category": primary_category(device),
        "entityId": _ident(extract_entity_id, device),
        "applianceId": _ident(extract_appliance_id, device),
        "serialType": _ident(extract_serial_type, device),
    }


def main() -> int:
    p = argparse.ArgumentParser()
    p.add_argument("--config", type=str, default=None, help="Path to config.json (default: next to alexa_gateway.py)")
    p.add_argument("--category", type=str, default=None, help="Only show endpoints/favorites of this display category")
    p.add_argument("--raw", action="store_true", help="Print full JSON records")
    args = p.parse_args()

    gw = AlexaGateway(cfg_path=args.config)

    try:
        print("Account:", json.dumps(gw.account_info(), indent=2))

        devices = gw.alexa_devices()
        print(f"\nAlexa devices: {len(devices)}")
        for d in devices:
            print(
                f"- {d.get('accountName')!r} family={d.get('deviceFamily')} type={d.get('deviceType')} "
                f"serial={d.get('serialNumber')} online={d.get('online')}"
            )

        for label, records in (("Endpoints", gw.smart_home_endpoints()), ("Favorites", gw.smart_home_favorites())):
            if args.category:
                records = filter_by_category(records, args.category)
            print(f"\n{label}: {len(records)}")
            for r in records:
                print(json.dumps(r if args.raw else _describe(r), indent=2 if args.raw else None, default=str))
    except AlexaError as e:
        print(f"ERROR: {json.dumps(e.to_dict(), indent=2)}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
