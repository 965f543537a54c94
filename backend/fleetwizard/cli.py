"""Management CLI for pricing checks and draft inspection.

Usage:
    python -m fleetwizard.cli price <request.json>   # Price one line offline
    python -m fleetwizard.cli show-draft <session>   # Dump a stored draft
    python -m fleetwizard.cli flows                  # List flows and their steps

A price request file looks like:
    {"start": "...", "end": "...", "context": {...},
     "occupants": [...], "addons": [...], "discount_percent": "10"}
"""

import asyncio
import json
import sys
from decimal import Decimal
from pathlib import Path

from pydantic import ValidationError

from fleetwizard.middleware.exceptions import PricingError
from fleetwizard.schemas.pricing import AddOn, DateRange, Occupant, PricingContext
from fleetwizard.services.drafts import build_draft_store
from fleetwizard.services.flows import FLOWS
from fleetwizard.services.pricing import price_line


def price(path: str) -> int:
    raw = json.loads(Path(path).read_text())
    try:
        result = price_line(
            DateRange(start=raw["start"], end=raw["end"]),
            PricingContext.model_validate(raw.get("context", {})),
            [Occupant.model_validate(o) for o in raw.get("occupants", [])],
            addons=[AddOn.model_validate(a) for a in raw.get("addons", [])],
            discount_percent=Decimal(str(raw.get("discount_percent", 0))),
        )
    except (KeyError, ValidationError) as e:
        print(f"  Invalid request: {e}")
        return 1
    except PricingError as e:
        print(f"  Cannot price: {e.message}")
        return 1

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0


async def _load_draft(session_id: str):
    return await build_draft_store().load(session_id)


def show_draft(session_id: str) -> int:
    state = asyncio.run(_load_draft(session_id))
    if state is None:
        print(f"  No usable draft for {session_id}")
        return 1
    print(json.dumps(state.model_dump(mode="json"), indent=2))
    return 0


def list_flows() -> int:
    for flow in FLOWS.values():
        print(f"  {flow.name}")
        for number, step in enumerate(flow.steps, start=1):
            print(f"    {number}. {step.id} ({len(step.rules)} rule(s))")
    return 0


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    arg = sys.argv[2] if len(sys.argv) > 2 else ""
    if cmd == "price" and arg:
        sys.exit(price(arg))
    elif cmd == "show-draft" and arg:
        sys.exit(show_draft(arg))
    elif cmd == "flows":
        sys.exit(list_flows())
    else:
        print("Usage: python -m fleetwizard.cli [price <file>|show-draft <session>|flows]")
        sys.exit(2)
