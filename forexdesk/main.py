"""ForexDesk — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
serving the API or printing one user's workspace snapshot.
"""

import logging

from fastapi import FastAPI

from forexdesk.api.routers import router

app = FastAPI(title="ForexDesk Broker API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("forexdesk")


@app.get("/health")
async def health():
    return {"status": "ok"}


def build_services(config):
    """Create the repositories and reconciler for *config* and wire the routers."""
    from forexdesk.api.routers import configure_routers
    from forexdesk.reconciler import SignalOrderReconciler
    from forexdesk.repos.db import init_db
    from forexdesk.repos.link_repo import SignalOrderLinkRepo
    from forexdesk.repos.signal_repo import SignalRepo
    from forexdesk.repos.user_repo import UserRepo

    init_db(config.db_path)
    user_repo = UserRepo(config.db_path)
    reconciler = SignalOrderReconciler(
        SignalRepo(config.db_path), SignalOrderLinkRepo(config.db_path),
    )
    configure_routers(user_repo=user_repo, reconciler=reconciler, config=config)
    return user_repo, reconciler


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and dispatch to the requested command."""
    import argparse
    import asyncio

    from forexdesk.config import load_config

    parser = argparse.ArgumentParser(description="ForexDesk broker integration")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the API server (default)")
    ws = sub.add_parser("workspace", help="Print one user's workspace snapshot")
    ws.add_argument("--user", required=True, help="User id")
    args = parser.parse_args()

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    user_repo, _ = build_services(config)

    if args.command == "workspace":
        asyncio.run(_print_workspace(user_repo, config, args.user))
    else:
        _serve(config)


def _serve(config) -> None:
    import uvicorn

    if not config.trust_user_header:
        logger.warning(
            "TRUST_PROXY_USER_HEADER is off and no session lookup is configured; "
            "every request will be rejected as unauthenticated"
        )
    logger.info("ForexDesk API listening on %s:%d", config.api_host, config.api_port)
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level="info")


async def _print_workspace(user_repo, config, user_id: str) -> None:
    from forexdesk.broker.credentials import get_oanda_client
    from forexdesk.broker.errors import BrokerError
    from forexdesk.broker.workspace import build_workspace
    from forexdesk.cli.dashboard import print_workspace

    try:
        snapshot = await build_workspace(get_oanda_client(user_repo, user_id, config))
    except BrokerError as exc:
        logger.error("Could not build workspace for %s: %s", user_id, exc)
        raise SystemExit(1) from exc
    print_workspace(snapshot)


if __name__ == "__main__":
    _run_cli()
