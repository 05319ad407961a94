import argparse
import json
import logging
import sys
from typing import Optional

import yaml

from db import ProfileNotFound, Stores
from rest_api import TrainingAgeAPI


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def load_profile_file(path: str) -> dict:
    """Read a profile mapping from a YAML or JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        if path.endswith(".json"):
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a profile mapping")
    return data


def classify(api: TrainingAgeAPI, user_id: str) -> None:
    result = api.classification.base_classification(user_id)
    _print(
        {
            "user_id": user_id,
            "tier": result["tier"].value,
            "formula_tier": result["formula_tier"].value,
            "effective_months": round(result["effective_months"], 2),
            "effective_tier": api.classification.get_effective_tier(user_id).value,
        }
    )


def import_profile(api: TrainingAgeAPI, user_id: str, path: str, initial: bool) -> None:
    api.profiles.save(user_id, load_profile_file(path))
    print(f"Profile saved for {user_id}")
    if initial:
        _print(api.auditor.record_initial_classification(user_id).to_dict())


def serve(db_path: str, yaml_path: str, host: str, port: int, scheduler: bool) -> None:
    import uvicorn

    api = TrainingAgeAPI(db_path, yaml_path, start_scheduler=scheduler)
    uvicorn.run(api.app, host=host, port=port)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Training-age classifier commands")
    parser.add_argument("--db", default=Stores.default_path())
    parser.add_argument("--yaml", default="settings.yaml")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    cls = sub.add_parser("classify")
    cls.add_argument("user_id")

    det = sub.add_parser("detail")
    det.add_argument("user_id")

    hist = sub.add_parser("history")
    hist.add_argument("user_id")
    hist.add_argument("--limit", type=int, default=10)

    aud = sub.add_parser("audit")
    aud.add_argument("user_id")

    sub.add_parser("audit-all")

    imp = sub.add_parser("import-profile")
    imp.add_argument("user_id")
    imp.add_argument("path")
    imp.add_argument(
        "--initial",
        action="store_true",
        help="record the initial classification after saving",
    )

    srv = sub.add_parser("serve")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8000)
    srv.add_argument("--scheduler", action="store_true")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.cmd == "serve":
        serve(args.db, args.yaml, args.host, args.port, args.scheduler)
        return 0

    api = TrainingAgeAPI(args.db, args.yaml)
    try:
        if args.cmd == "classify":
            classify(api, args.user_id)
        elif args.cmd == "detail":
            _print(api.classification.get_classification_detail(args.user_id).to_dict())
        elif args.cmd == "history":
            entries = api.classification.get_classification_history(
                args.user_id, args.limit
            )
            _print([e.to_dict() for e in entries])
        elif args.cmd == "audit":
            _print(api.auditor.run_audit(args.user_id).to_dict())
        elif args.cmd == "audit-all":
            outcomes = api.auditor.run_audits(api.profiles.user_ids())
            _print({uid: o.to_dict() for uid, o in outcomes.items()})
        elif args.cmd == "import-profile":
            import_profile(api, args.user_id, args.path, args.initial)
    except ProfileNotFound as e:
        print(str(e), file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
