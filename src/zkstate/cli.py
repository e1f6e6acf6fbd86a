"""zkstate CLI — inspect commitment records and the nullifier tree.

Usage:
    python -m zkstate.cli --store data/commitments.json status
    python -m zkstate.cli --store data/commitments.json list --state balances
    python -m zkstate.cli --store data/commitments.json select --public-key 0x12... --value 45
    python -m zkstate.cli --store data/commitments.json nullifier-root
    python -m zkstate.cli --store data/commitments.json witness --nullifier 0xab...
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from zkstate.config import ZappConfig
from zkstate.crypto.field import to_int
from zkstate.errors import ZappError
from zkstate.persistence.commitment_store import LocalCommitmentStore
from zkstate.service import ZappService


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the CLI."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def _load_config(args: argparse.Namespace) -> ZappConfig:
    config = ZappConfig.from_json(args.config) if args.config else ZappConfig.from_env()
    if args.store is not None:
        config.store.path = args.store
    return config


def _make_service(config: ZappConfig) -> ZappService:
    """Create an offline ZappService: store and trees, no prover or chain."""
    service = ZappService(
        store=LocalCommitmentStore(storage_path=config.store.path),
        config=config,
    )
    service.rebuild_tree()
    return service


def _print(data: object) -> None:
    print(json.dumps(data, indent=2))


def cmd_status(args: argparse.Namespace, config: ZappConfig) -> int:
    service = _make_service(config)
    _print(service.status())
    return 0


def cmd_list(args: argparse.Namespace, config: ZappConfig) -> int:
    service = _make_service(config)
    if args.state:
        commitments = service.candidates(args.state, args.mapping_key)
    else:
        commitments = service.store.all()
    documents = []
    for commitment in commitments:
        document = commitment.to_document()
        document.pop("secretKey", None)
        documents.append(document)
    _print(documents)
    return 0


def cmd_select(args: argparse.Namespace, config: ZappConfig) -> int:
    service = _make_service(config)
    if args.state:
        candidates = service.candidates(args.state, args.mapping_key)
    else:
        candidates = service.store.all()
    selection = service.selector.select_inputs(to_int(args.public_key), args.value, candidates)
    if not selection.found:
        print(f"Error: no commitment pair covers {args.value}", file=sys.stderr)
        return 1
    first, second = selection.pair
    _print({
        "outcome": selection.outcome.value,
        "commitments": [first.hex_id, second.hex_id],
        "values": [first.preimage.scalar_value(), second.preimage.scalar_value()],
    })
    return 0


def cmd_nullifier_root(args: argparse.Namespace, config: ZappConfig) -> int:
    service = _make_service(config)
    _print(service.status()["tree"])
    return 0


def cmd_witness(args: argparse.Namespace, config: ZappConfig) -> int:
    service = _make_service(config)
    result = service.witness(args.nullifier)
    if not result.success:
        print(f"Error: {'; '.join(result.errors)}", file=sys.stderr)
        return 1
    _print(result.data)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zkstate",
        description="zkstate — commitment wallet and nullifier tree CLI",
    )
    parser.add_argument(
        "--store",
        type=Path,
        default=None,
        help="Path to the commitment store JSON file (default: ZAPP_STORE_PATH)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a JSON config file (default: environment)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: the configured level)",
    )
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show store and tree status")

    # list
    p_list = sub.add_parser("list", help="List commitments")
    p_list.add_argument("--state", help="State variable name")
    p_list.add_argument("--mapping-key", help="Mapping key within the state variable")

    # select
    p_select = sub.add_parser("select", help="Select two input commitments for a spend")
    p_select.add_argument("--public-key", required=True, help="Owner public key (hex or decimal)")
    p_select.add_argument("--value", required=True, type=int, help="Value to cover")
    p_select.add_argument("--state", help="State variable name")
    p_select.add_argument("--mapping-key", help="Mapping key within the state variable")

    # nullifier-root
    sub.add_parser("nullifier-root", help="Rebuild the nullifier tree and show its root")

    # witness
    p_wit = sub.add_parser("witness", help="Membership witness for a nullifier")
    p_wit.add_argument("--nullifier", required=True, help="Nullifier (hex or decimal)")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "list": cmd_list,
        "select": cmd_select,
        "nullifier-root": cmd_nullifier_root,
        "witness": cmd_witness,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        config = _load_config(args)
        setup_logging(args.log_level or config.log_level)
        return handler(args, config)
    except (OSError, ValueError, ZappError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
