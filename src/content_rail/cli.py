"""
Content Rail CLI

Commands:
  serve         - Run the licensing server
  create-agent  - Generate a new agent identity
  check         - Show price and owner of a piece of content
  license       - Check whether an agent holds a valid license
  simulate      - Run a purchase scenario against an in-memory rail
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional
import structlog

from .config import ONE_TOKEN, AgentConfig, ServerSettings


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
    )


def cmd_serve(args):
    """Run the licensing server."""
    from .api.server import run

    settings = ServerSettings.from_env()
    if args.port:
        settings.port = args.port

    print(f"Starting Content Rail on port {settings.port}")
    run(settings)


def cmd_create_agent(args):
    """Generate a new agent identity."""
    from .crypto.identity import AgentIdentity

    identity = AgentIdentity.generate()
    print(f"Address:     {identity.address}")
    print(f"Private key: {identity.private_key_hex()}")
    print("Store the private key as AGENT_PRIVATE_KEY. It cannot be recovered.")


async def _check(args) -> int:
    from .core.errors import NotFoundError
    from .settlement.client import HttpLicensingClient

    async with HttpLicensingClient(base_url=args.backend) as client:
        try:
            quote = await client.get_content(args.content_hash)
        except NotFoundError:
            print(f"Content not found: {args.content_hash}")
            return 1
    print(f"Content: {quote.fingerprint_hex}")
    print(f"  Price:  {quote.price / ONE_TOKEN:.6f} ({quote.price} units)")
    print(f"  Owner:  {quote.owner}")
    print(f"  URI:    {quote.uri}")
    print(f"  Active: {'Yes' if quote.active else 'No'}")
    return 0


def cmd_check(args):
    """Show price and owner of a piece of content."""
    sys.exit(asyncio.run(_check(args)))


async def _license(args) -> int:
    from .settlement.client import HttpLicensingClient

    async with HttpLicensingClient(base_url=args.backend) as client:
        licensed = await client.has_valid_license(args.agent, args.content_hash)
    print(f"License {'valid' if licensed else 'not found'} for {args.agent}")
    return 0 if licensed else 1


def cmd_license(args):
    """Check whether an agent holds a valid license."""
    sys.exit(asyncio.run(_license(args)))


async def simulate(
    items: int = 5,
    strategy: str = "parallel",
    price: int = ONE_TOKEN // 100,
    fail_item: Optional[int] = None,
    latency: float = 0.01,
) -> dict:
    """
    Register ``items`` pieces of content, then buy all of them with one
    agent over an in-memory rail. Returns the settlement result and the
    agent's stats.
    """
    from .core.ledger import fingerprint_of
    from .core.licensing import LicensingEngine
    from .crypto.identity import AgentIdentity
    from .settlement.client import LocalLicensingClient
    from .settlement.orchestrator import PaymentOrchestrator, SettlementStrategy
    from .settlement.rail import InMemoryPaymentRail

    engine = LicensingEngine()
    fingerprints = []
    for i in range(items):
        fingerprint = fingerprint_of(f"simulated article {i}".encode("utf-8"))
        engine.register_content(fingerprint, price, f"ipfs://simulated/{i}", f"creator-{i}")
        fingerprints.append(fingerprint)

    identity = AgentIdentity.generate()
    failing_owner = f"creator-{fail_item}" if fail_item is not None else None
    rail = InMemoryPaymentRail(
        identity.address,
        balances={identity.address: 100 * ONE_TOKEN},
        latency=latency,
        reject_if=lambda ins: "recipient blocked" if ins.to == failing_owner else None,
    )
    agent = PaymentOrchestrator(identity, LocalLicensingClient(engine), rail, config=AgentConfig())

    result = await agent.purchase(fingerprints, SettlementStrategy(strategy))
    return {
        "result": result.to_dict(),
        "stats": agent.get_stats(),
        "overview": engine.overview(),
    }


def cmd_simulate(args):
    """Run a purchase scenario against an in-memory rail."""
    report = asyncio.run(simulate(
        items=args.items,
        strategy=args.strategy,
        price=args.price,
        fail_item=args.fail_item,
    ))
    print(json.dumps(report, indent=2))


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Content Rail - content licensing and payments for agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--port", type=int, default=None)

    # create-agent
    subparsers.add_parser("create-agent", help="Generate an agent identity")

    # check
    check_parser = subparsers.add_parser("check", help="Show content info")
    check_parser.add_argument("content_hash", help="0x-prefixed content hash")
    check_parser.add_argument("--backend", default=None, help="Server URL")

    # license
    license_parser = subparsers.add_parser("license", help="Check an agent's license")
    license_parser.add_argument("content_hash", help="0x-prefixed content hash")
    license_parser.add_argument("--agent", required=True, help="Agent address")
    license_parser.add_argument("--backend", default=None, help="Server URL")

    # simulate
    simulate_parser = subparsers.add_parser("simulate", help="Simulate a batch purchase")
    simulate_parser.add_argument("--items", type=int, default=5)
    simulate_parser.add_argument(
        "--strategy",
        default="parallel",
        choices=["sequential", "parallel", "atomic-batch"],
    )
    simulate_parser.add_argument("--price", type=int, default=ONE_TOKEN // 100, help="Price per item in units")
    simulate_parser.add_argument("--fail-item", type=int, default=None, help="Index of an item the rail rejects")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "create-agent":
        cmd_create_agent(args)
    elif args.command == "check":
        cmd_check(args)
    elif args.command == "license":
        cmd_license(args)
    elif args.command == "simulate":
        cmd_simulate(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
