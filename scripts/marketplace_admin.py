"""
Operator helpers for the escrow marketplace program.

Initializes the global state, registers the local keypair as a seller, buyer
or logistics provider, and prints the live counters.
Requires: PROGRAM_ID and PAYER_KEYPAIR_PATH in the environment or backend/.env.
"""
import argparse
import asyncio
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "backend"))
from escrow_marketplace.errors import MarketplaceError  # noqa: E402
from escrow_marketplace.orchestrator import MarketplaceClient  # noqa: E402
from escrow_marketplace.rpc import KeypairTransport, RpcStateReader, load_keypair, open_rpc_client  # noqa: E402
from escrow_marketplace.settings import get_settings  # noqa: E402


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    keypair_path = args.keypair or settings.payer_keypair_path
    if not keypair_path:
        print("PAYER_KEYPAIR_PATH must be set (or pass --keypair)")
        return 1
    keypair = load_keypair(keypair_path)
    rpc = open_rpc_client(settings)
    try:
        client = MarketplaceClient(
            RpcStateReader(rpc),
            KeypairTransport(rpc, keypair, skip_preflight=settings.skip_preflight),
        )
        wallet = keypair.pubkey()
        if args.command == "state":
            try:
                state = await client.fetch_global_state()
            except MarketplaceError as exc:
                print(f"Failed to read global state: {exc.message}")
                return 1
            print(f"trade_counter={state.trade_counter} purchase_counter={state.purchase_counter}")
            return 0

        if args.command == "initialize":
            result = await client.initialize(wallet)
        elif args.role == "seller":
            result = await client.register_seller(wallet)
        elif args.role == "buyer":
            result = await client.register_buyer(wallet)
        else:
            result = await client.register_logistics_provider(wallet)

        if not result.ok:
            print(f"{args.command} failed ({result.error_kind}): {result.error}")
            return 1
        print(f"{args.command} ok address={result.address} signature={result.signature}")
        return 0
    finally:
        await rpc.close()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--keypair", help="Path to a JSON keypair file")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("initialize", help="Create the global state account")
    register = sub.add_parser("register", help="Register the keypair as a marketplace identity")
    register.add_argument("role", choices=["seller", "buyer", "logistics"])
    sub.add_parser("state", help="Print the global counters")
    return asyncio.run(run(parser.parse_args()))


if __name__ == "__main__":
    sys.exit(main())
