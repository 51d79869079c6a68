"""Command line entry point.

Usage:
    python -m token_holder_indexer init-db
    python -m token_holder_indexer sync --contract 0x... --kind erc1155 [--start-block N] [--follow]
    python -m token_holder_indexer rebuild --contract 0x... --kind erc1155
    python -m token_holder_indexer snapshot --contract 0x... --kind erc721 [--block N] [--token ID ...] [--limit N]
    python -m token_holder_indexer validate --contract 0x... --kind erc721 [--block N]
    python -m token_holder_indexer merkle --contract 0x... --kind erc1155 [--block N] [--token ID ...]
    python -m token_holder_indexer detect --contract 0x...

Results are printed to stdout as JSON; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any

from token_holder_indexer.chain.contracts import LiveBalanceReader
from token_holder_indexer.chain.deployment import find_deployment_block
from token_holder_indexer.config import Settings, get_settings
from token_holder_indexer.models import CancellationToken, ContractInfo, ContractKind
from token_holder_indexer.pipeline import DEFAULT_POLL_INTERVAL_SECONDS, Indexer, create_provider
from token_holder_indexer.snapshot.generator import SnapshotRequest
from token_holder_indexer.snapshot.hybrid import HybridSnapshotOptions
from token_holder_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def _token_id(value: str) -> int:
    return int(value, 0)


def _add_contract_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--contract", required=True, help="Token contract address")
    parser.add_argument(
        "--kind",
        required=True,
        choices=[k.value for k in ContractKind],
        help="Token standard of the contract",
    )
    parser.add_argument("--start-block", type=int, default=None, help="First block to index")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="token-holder-indexer",
        description="Index ERC-721/ERC-1155 transfers and produce holder snapshots.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create database tables")

    sync = commands.add_parser("sync", help="Sync the ledger to the chain head")
    _add_contract_args(sync)
    sync.add_argument("--follow", action="store_true", help="Keep syncing until interrupted")
    sync.add_argument("--interval", type=float, default=DEFAULT_POLL_INTERVAL_SECONDS, help="Follow poll interval")

    rebuild = commands.add_parser("rebuild", help="Rebuild the ledger from stored events")
    _add_contract_args(rebuild)

    snapshot = commands.add_parser("snapshot", help="Print a holder snapshot")
    _add_contract_args(snapshot)
    snapshot.add_argument("--block", type=int, default=None, help="Historical block number")
    snapshot.add_argument("--token", type=_token_id, action="append", default=[], help="Token id (repeatable)")
    snapshot.add_argument("--limit", type=int, default=None, help="Maximum holders to print")
    snapshot.add_argument("--live", action="store_true", help="Pick live chain reads where possible")

    validate = commands.add_parser("validate", help="Validate stored events and ledger")
    _add_contract_args(validate)
    validate.add_argument("--block", type=int, default=None, help="Validate up to this block")

    merkle = commands.add_parser("merkle", help="Build a Merkle distribution from a snapshot")
    _add_contract_args(merkle)
    merkle.add_argument("--block", type=int, default=None, help="Snapshot block number")
    merkle.add_argument("--token", type=_token_id, action="append", default=[], help="Token id (repeatable)")

    detect = commands.add_parser("detect", help="Detect token standard and deployment block over RPC")
    detect.add_argument("--contract", required=True, help="Token contract address")

    return parser


def _contract_from_args(args: argparse.Namespace) -> ContractInfo:
    return ContractInfo(
        address=args.contract,
        kind=ContractKind(args.kind),
        start_block=args.start_block,
    )


def _emit(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def _cancel_on_sigint() -> CancellationToken:
    cancel = CancellationToken()
    with contextlib.suppress(NotImplementedError):
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel.cancel)
    return cancel


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    _emit({"status": "ok"})


async def _detect(args: argparse.Namespace, settings: Settings) -> None:
    provider = create_provider(settings)
    try:
        kind = await LiveBalanceReader(provider, args.contract).detect_contract_kind()
        deployed = await find_deployment_block(provider, args.contract)
    finally:
        await provider.aclose()
    _emit(
        {
            "contract": args.contract.lower(),
            "kind": kind.value if kind is not None else None,
            "deployment_block": deployed,
        }
    )


async def _run(args: argparse.Namespace, settings: Settings) -> None:
    indexer = Indexer(_contract_from_args(args), settings)

    if args.command == "sync" and args.follow:
        await indexer.start()
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, indexer.request_stop)
        await indexer.run(args.interval)
        _emit({"syncs_completed": indexer.stats.syncs_completed, "events_found": indexer.stats.events_found})
        return

    async with indexer:
        if args.command == "sync":
            result = await indexer.sync(_cancel_on_sigint())
            if result is None:
                _emit({"status": "up_to_date"})
            else:
                _emit(
                    {
                        "from_block": result.from_block,
                        "to_block": result.to_block,
                        "blocks_scanned": result.blocks_scanned,
                        "events_found": result.events_found,
                        "skipped_ranges": [
                            {"from_block": r.from_block, "to_block": r.to_block, "reason": r.reason}
                            for r in result.skipped_ranges
                        ],
                        "cancelled": result.cancelled,
                        "duration_seconds": round(result.duration_seconds, 3),
                    }
                )
        elif args.command == "rebuild":
            processed = await indexer.processor.rebuild_from_events(_cancel_on_sigint())
            _emit(
                {
                    "events_processed": processed.events_processed,
                    "state_updates": processed.state_updates,
                    "anomalies": [a.describe() for a in processed.anomalies],
                }
            )
        elif args.command == "snapshot":
            if args.live:
                result = await indexer.hybrid_generator.generate_snapshot(
                    HybridSnapshotOptions(
                        contract_address=indexer.contract.address,
                        contract_kind=indexer.contract.kind,
                        token_ids=tuple(args.token),
                        block_number=args.block,
                        quick_sync_blocks=settings.sync.quick_sync_blocks,
                    )
                )
                payload = result.to_dict()
                if args.limit is not None:
                    payload["holders"] = payload["holders"][: args.limit]
                _emit(payload)
            else:
                snapshot = await indexer.snapshot_generator.generate_snapshot(
                    SnapshotRequest(
                        contract=indexer.contract.address,
                        token_ids=tuple(args.token),
                        block_number=args.block,
                        limit=args.limit,
                    )
                )
                _emit(snapshot.to_dict())
        elif args.command == "validate":
            report = await indexer.validator.generate_validation_report(args.block)
            _emit(report.to_dict())
        elif args.command == "merkle":
            snapshot = await indexer.snapshot_generator.generate_snapshot(
                SnapshotRequest(
                    contract=indexer.contract.address,
                    token_ids=tuple(args.token),
                    block_number=args.block,
                    include_metadata=False,
                )
            )
            distribution = await indexer.merkle_builder.generate_from_snapshot(snapshot)
            _emit(distribution.to_dict())


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        settings.validate_requirements(command=args.command)
    except ValueError as e:
        logger.error("%s", e)
        return 2

    try:
        if args.command == "init-db":
            asyncio.run(_init_db(settings))
        elif args.command == "detect":
            asyncio.run(_detect(args, settings))
        else:
            asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    except Exception as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
