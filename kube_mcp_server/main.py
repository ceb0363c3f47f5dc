#!/usr/bin/env python3
from __future__ import annotations
import argparse
import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .config import resolve_settings, Settings
from .errors import ConfigError
from .session import SessionManager


SERVER_NAME = "Kubernetes MCP Server"
try:
    __version__ = version("kube-mcp-server")
except PackageNotFoundError:
    __version__ = "0.0.0-local"

log = logging.getLogger("kube-mcp-server")


def build_server(session: SessionManager) -> FastMCP:
    @asynccontextmanager
    async def lifespan(server: FastMCP):
        try:
            yield
        finally:
            results = await session.shutdown()
            if results:
                log.info("Closed %d resources on shutdown", len(results))

    mcp = FastMCP(
        name=SERVER_NAME,
        version=__version__,
        instructions=(
            "Execution layer for Kubernetes clusters. "
            "Port-forwards opened with port_forward stay up until stop_port_forward or cleanup is called; "
            "call cleanup when you are done with them. "
            "Use kubectl_context to inspect or switch the active context."
        ),
        lifespan=lifespan,
    )

    # --- Explicit tool registration ---
    from .tools import contexts as context_tools
    from .tools import forwards as forward_tools
    from .tools import k8s as k8s_tools

    context_tools.register(mcp, session)
    forward_tools.register(mcp, session)
    k8s_tools.register(mcp, session)

    @mcp.tool(name="ping", description="Verify that the server is still responsive.")
    def ping() -> dict:
        return {}

    @mcp.tool(name="meta_health", description="Server version, resolved kubeconfig source and live resource counts.")
    def meta_health() -> dict:
        return {
            "name": SERVER_NAME,
            "version": __version__,
            "status": "ok",
            "session": session.diagnostics(),
        }

    return mcp


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=SERVER_NAME)
    parser.add_argument("--transport", default="stdio", choices=["stdio", "sse", "http"], help="MCP transport")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address for sse/http")
    parser.add_argument("--port", type=int, default=8000, help="Bind port for sse/http")
    parser.add_argument("--config", default=None, help="Path to a YAML/JSON settings file")
    parser.add_argument("--context", default=None, help="Override the kubeconfig context")
    parser.add_argument("--namespace", default=None, help="Override the default namespace")
    parser.add_argument("--print-tools", action="store_true", help="List tools and exit")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)

    overrides: Dict[str, Any] = {"context": args.context, "namespace": args.namespace}
    settings: Settings = resolve_settings(explicit_config_path=args.config, cli_overrides=overrides)

    # stdout belongs to the stdio transport
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    log.info("Starting %s v%s", SERVER_NAME, __version__)

    session = SessionManager(settings)
    mcp = build_server(session)

    if args.print_tools:
        tools = asyncio.run(mcp.get_tools())
        for name in sorted(tools.keys()):
            desc = getattr(tools[name], "description", "")
            print(f"{name}: {desc}")
        return

    try:
        resolved = session.resolve()
    except ConfigError as e:
        log.error("Cannot start: %s", e)
        sys.exit(2)
    log.info("Kubeconfig source %s, context %s, namespace %s",
             resolved.source.kind, resolved.context, resolved.namespace)

    def _graceful_exit(signum, frame):
        log.info("Received signal %s, shutting down %s v%s", signum, SERVER_NAME, __version__)
        sys.exit(0)

    signal.signal(signal.SIGINT, _graceful_exit)
    signal.signal(signal.SIGTERM, _graceful_exit)

    try:
        if args.transport == "stdio":
            mcp.run(transport="stdio")
        else:
            mcp.run(transport=args.transport, host=args.host, port=args.port)
    finally:
        # bridges are child processes; none may outlive the server
        if session.kill_bridges():
            log.warning("Killed port-forward bridges left running at exit")
        resolved.discard()


if __name__ == "__main__":
    main()
