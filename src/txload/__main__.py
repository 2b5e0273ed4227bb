import argparse
import asyncio
import logging
import sys
from pathlib import Path

from txload.config import LoadTestConfig, load_config
from txload.errors import ConfigValidation
from txload.logging_config import setup_logging
from txload.runner import LoadTest

log = logging.getLogger("txload")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="txload", description="Synthetic transaction load against a ledger RPC endpoint.")
    parser.add_argument("-c", "--config", type=Path, help="TOML config file.")
    parser.add_argument("--env-file", type=Path, default=Path(".env"), help="dotenv file (default: .env).")
    parser.add_argument("--log-level", help="Log level (default: $LOG_LEVEL or INFO).")
    parser.add_argument("--network", choices=["evm", "xrpl"], help="Ledger backend.")
    parser.add_argument("--rpc-url", help="Ledger RPC endpoint.")
    parser.add_argument("-n", "--num-wallets", type=int, help="Worker accounts to create.")
    parser.add_argument("-t", "--transactions-per-wallet", type=int, help="Transfers sent by each worker.")
    parser.add_argument("-i", "--interval-ms", type=int, help="Delay between a worker's transfers.")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run one load test and exit (default).")
    serve = sub.add_parser("serve", help="Run the load test behind an HTTP state/control API.")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser.parse_args(argv)


def overrides(a) -> dict:
    return {
        "network": a.network,
        "rpc_url": a.rpc_url,
        "num_wallets": a.num_wallets,
        "transactions_per_wallet": a.transactions_per_wallet,
        "interval_ms": a.interval_ms,
    }


def serve(cfg: LoadTestConfig, host: str, port: int) -> int:
    import uvicorn

    from txload.app import create_app

    app = create_app(LoadTest(cfg))
    uvicorn.run(app, host=host, port=port, lifespan="on", log_config=None)
    return app.state.exit_code or 0


def main(argv=None) -> int:
    a = parse_args(argv)
    setup_logging(a.log_level)

    try:
        cfg = load_config(a.config, env_file=a.env_file, overrides=overrides(a))
    except ConfigValidation as e:
        log.error("%s", e)
        return 1
    log.info("Configuration validated")

    if a.command == "serve":
        return serve(cfg, a.host, a.port)
    return asyncio.run(LoadTest(cfg).run())


if __name__ == "__main__":
    sys.exit(main())
