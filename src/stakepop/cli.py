import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from stakepop.chain import ChainClient, SubstrateChainClient, probe_endpoint
from stakepop.config import load_config
from stakepop.constants import DEFAULT_PARACHAIN_ID
from stakepop.errors import ChainConnectionError, PopulateError, StageError
from stakepop.logging_config import setup_logging
from stakepop.models import RunReport
from stakepop.orchestrator import Orchestrator

log = logging.getLogger("stakepop.cli")

Connect = Callable[[dict[str, Any]], Awaitable[ChainClient]]


async def connect_client(cfg: dict[str, Any]) -> ChainClient:
    chain, timeout = cfg["chain"], cfg["timeout"]
    if chain["probe"]:
        await probe_endpoint(
            chain["url"],
            max_retries=int(timeout["probe_retries"]),
            retry_delay=float(timeout["probe_delay"]),
            timeout=float(timeout["rpc"]),
        )
    return await SubstrateChainClient.connect(
        chain["url"], ss58_format=int(chain["ss58_format"]), timeout=float(timeout["rpc"])
    )


def _count(value: str) -> int:
    n = int(value)
    if n < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {n}")
    return n


def _amount(value: str) -> int:
    n = int(value)
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be > 0, got {n}")
    return n


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="stakepop",
                                     description="Populate a staking network with validators and nominators.")
    parser.add_argument("-c", "--config", type=Path, help="TOML file overriding the packaged defaults.")
    parser.add_argument("--log-level", help="Log level for stakepop loggers (default: $LOG_LEVEL or INFO).")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_chain(p: argparse.ArgumentParser) -> None:
        p.add_argument("-u", "--url", help="RPC endpoint of the node.")
        p.add_argument("--no-probe", action="store_true", help="Skip the HTTP health probe.")

    def add_run(p: argparse.ArgumentParser) -> None:
        add_chain(p)
        p.add_argument("-p", "--parachain-id", type=int, default=DEFAULT_PARACHAIN_ID,
                       help="The id of the destination parachain.")
        p.add_argument("-n", "--number", type=_count, help="Number of new accounts.")
        p.add_argument("-b", "--bond-amount", type=_amount,
                       help="Bond per account; accounts are funded with twice this.")
        p.add_argument("-s", "--funder", help="Secret URI of the funding account (default //Alice).")
        p.add_argument("--seed-namespace", help="Derive accounts from '{namespace}/{i}' to reproduce a run.")
        p.add_argument("--finality-timeout", type=float, help="Seconds to wait for each confirmation.")

    add_run(sub.add_parser("validate", help="Populate staking validators."))
    nominate = sub.add_parser("nominate", help="Populate staking nominators.")
    add_run(nominate)
    nominate.add_argument("--nominations", type=_count, help="Approx. number of nominations per nominator.")
    add_chain(sub.add_parser("stakers-info", help="Count registered validators and nominators."))

    serve = sub.add_parser("serve", help="Run the HTTP service.")
    add_chain(serve)
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    return parser.parse_args(argv)


def overrides(a: argparse.Namespace) -> dict:
    o: dict = {
        "chain": {"url": a.url, "probe": False if a.no_probe else None},
        "accounts": {"number": getattr(a, "number", None)},
        "funding": {"funder_uri": getattr(a, "funder", None)},
        "staking": {"nominations": getattr(a, "nominations", None)},
        "timeout": {"finality": getattr(a, "finality_timeout", None)},
        "service": {"host": getattr(a, "host", None), "port": getattr(a, "port", None)},
    }
    return o


async def run(args: argparse.Namespace, cfg: dict[str, Any], connect: Connect = connect_client) -> RunReport:
    client = await connect(cfg)
    try:
        orch = Orchestrator(client, cfg)
        number = int(cfg["accounts"]["number"])
        match args.command:
            case "validate":
                return await orch.validate(number, args.bond_amount,
                                           namespace=args.seed_namespace, parachain_id=args.parachain_id)
            case "nominate":
                return await orch.nominate(number, args.bond_amount, int(cfg["staking"]["nominations"]),
                                           namespace=args.seed_namespace, parachain_id=args.parachain_id)
            case "stakers-info":
                return await orch.stakers_info()
            case _:
                raise ValueError(f"unknown command {args.command}")
    finally:
        await client.close()


def _report_error(command: str, e: PopulateError) -> None:
    print(f"stakepop: {command} failed: {e}", file=sys.stderr)
    if isinstance(e, StageError):
        for o in e.failures:
            print(f"  {o.address}: {'; '.join(o.errors)}", file=sys.stderr)


def main(argv: list[str] | None = None, connect: Connect = connect_client) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    cfg = load_config(args.config, overrides(args))

    if args.command == "serve":
        from stakepop.app import serve
        serve(cfg, connect=connect)
        return 0

    try:
        report = asyncio.run(run(args, cfg, connect))
    except ChainConnectionError as e:
        _report_error(args.command, e)
        return 2
    except PopulateError as e:
        _report_error(args.command, e)
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    if not report.ok:
        failed = report.failed
        first = failed[0]
        print(
            f"stakepop: {args.command}: {len(failed)}/{len(report.outcomes)} accounts failed "
            f"(first {first.address}: {'; '.join(first.errors)})",
            file=sys.stderr,
        )
    return report.exit_code
