#!/usr/bin/env python3
"""
chatrelay CLI.

Every command has a short name and standard aliases:

    COMMAND     ALIASES             WHAT IT DOES
    -------     -------             ----------------------------------
    serve       dial, start, up     Start the chatrelay server
    send        say, chat           Send one message and print the reply
    ring        status, health      Ping a running instance
    tap         log, tail, watch    Live frame tap of the gateway
    keygen      newkey              Generate an API key entry for config.yaml
    banner      tone                Print the banner
"""

import argparse
import asyncio
import sys

from chatrelay import __version__

BANNER = r"""
    ╔══════════════════════════════════════════════╗
    ║                                              ║
    ║    ┌─┐┬ ┬┌─┐┌┬┐  ┬─┐┌─┐┬  ┌─┐┬ ┬            ║
    ║    │  ├─┤├─┤ │   ├┬┘├┤ │  ├─┤└┬┘            ║
    ║    └─┘┴ ┴┴ ┴ ┴   ┴└─└─┘┴─┘┴ ┴ ┴             ║
    ║                                              ║
    ║    Every message gets an answer.   v""" + __version__ + r"""    ║
    ║                                              ║
    ╚══════════════════════════════════════════════╝
"""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chatrelay server."""
    import uvicorn
    from chatrelay.config import get_config

    cfg = get_config()
    server = cfg.get("server", {})
    host = args.host or server.get("host", "0.0.0.0")
    port = args.port or server.get("port", 8000)

    print(BANNER)
    print(f"  Listening on {host}:{port}  (WebSocket: ws://{host}:{port}/ws)")
    print(f"  Backend: {cfg.get('backend', {}).get('backend_url') or '(none, offline mode)'}")
    print()

    uvicorn.run(
        "chatrelay.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_send(args):
    """Send one message and print the reply."""
    from chatrelay.client import RealtimeClient
    from chatrelay.errors import ChatRelayError

    text = " ".join(args.message)
    url = (args.url or "http://localhost:8000").rstrip("/")
    ws_url = "ws" + url[4:] if url.startswith("http") else url
    client = RealtimeClient(
        base_url=url,
        ws_url=ws_url,
        api_key=args.key or "",
        user_id=args.user,
        mode="websocket" if args.ws else "http",
        max_reconnect_attempts=0,
    )

    try:
        if args.ws:
            reply = asyncio.run(_send_over_socket(client, text, args.thread, args.timeout))
        else:
            reply = asyncio.run(client.send_message(text, thread_id=args.thread))
    except ChatRelayError as e:
        print(f"  ✗  {e}")
        sys.exit(1)

    print(f"  thread: {reply.get('threadId')}")
    print()
    print(reply.get("response") or "")


async def _send_over_socket(client, text: str, thread_id: str | None, timeout: float) -> dict:
    from chatrelay.errors import ChatRelayError

    done: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_response(data):
        if not done.done():
            done.set_result({"threadId": data.get("threadId"), "response": data.get("content")})

    def on_error(data):
        if not done.done():
            done.set_exception(ChatRelayError(str(data.get("error")), {"details": data.get("details")}))

    client.on("response", on_response)
    client.on("error", on_error)
    await client.connect()
    try:
        await client.send_message(text, thread_id=thread_id)
        return await asyncio.wait_for(done, timeout)
    except asyncio.TimeoutError as e:
        raise ChatRelayError(f"No reply within {timeout:g}s") from e
    finally:
        await client.disconnect()


def cmd_ring(args):
    """Ping a running chatrelay instance."""
    import httpx

    url = (args.url or "http://localhost:8000").rstrip("/")
    try:
        resp = httpx.get(f"{url}/api/health", timeout=5)
        if resp.status_code != 200:
            print(f"  ✗  No answer — got HTTP {resp.status_code}")
            return
        health = resp.json()
        print(f"  ☎  Ring ring... {url} is UP (v{health.get('version', '?')})")
        print(f"  🤖 AI backend: {'online' if health.get('ai_available') else 'offline (heuristic fallback)'}")
        err = (health.get("provider") or {}).get("last_error")
        if err:
            print(f"     {err.get('user_message') or err.get('message')}")
        print(f"  🔌 Connections: {health.get('connections', 0)}")

        if args.key:
            stats = httpx.get(f"{url}/api/stats", headers={"X-API-Key": args.key}, timeout=5).json()
            if stats.get("ok"):
                data = stats["data"]
                conv = data.get("conversations", {})
                ctx = data.get("contexts", {})
                store = data.get("storage", {})
                print(f"  💬 Threads: {conv.get('total_conversations', 0)} in memory, "
                      f"{store.get('threads', 0)} stored ({store.get('messages', 0)} messages)")
                print(f"  📁 Project contexts: {ctx.get('total_contexts', 0)} "
                      f"({ctx.get('total_users', 0)} users)")
            else:
                print(f"  ✗  Stats refused: {stats.get('error', {}).get('message')}")
    except httpx.ConnectError:
        print(f"  ✗  Dead line — nothing at {url}")
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")


def cmd_tap(args):
    """Live frame tap of the gateway."""
    from chatrelay.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        type_filter=args.type,
        user_filter=args.user,
        raw=args.raw,
    )


def cmd_keygen(args):
    """Generate a key and print the config.yaml entry for it."""
    from chatrelay.auth import ApiKeyAuthenticator

    auth = ApiKeyAuthenticator()
    permissions = args.permission or ["chat:read", "chat:write"]
    key = auth.generate_key(name=args.name, permissions=permissions, rate_limit=args.rate_limit)
    print("  Add under auth.keys in config.yaml:\n")
    print(f"    - key: {key}")
    print(f"      name: {args.name}")
    print(f"      permissions: [{', '.join(permissions)}]")
    print(f"      rate_limit: {args.rate_limit}")


def cmd_banner(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="chatrelay — chat relay with realtime gateway and offline fallback.",
        epilog="Run 'chatrelay <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatrelay {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "dial", "start", "up"],
                 "Start the chatrelay server", cmd_serve, setup_serve)

    def setup_send(p):
        p.add_argument("message", nargs="+", help="Message text")
        p.add_argument("--url", "-u", default=None, help="Server URL (default: http://localhost:8000)")
        p.add_argument("--key", "-k", default=None, help="API key")
        p.add_argument("--user", default="cli", help="User id")
        p.add_argument("--thread", "-t", default=None, help="Thread id to continue")
        p.add_argument("--ws", action="store_true", help="Send over the WebSocket gateway instead of HTTP")
        p.add_argument("--timeout", type=float, default=60.0, help="Seconds to wait for a WebSocket reply")

    _add_command(sub, ["send", "say", "chat"],
                 "Send one message and print the reply", cmd_send, setup_send)

    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help="Server URL (default: http://localhost:8000)")
        p.add_argument("--key", "-k", default=None, help="API key with stats:read for counters")

    _add_command(sub, ["ring", "status", "health"],
                 "Ping a running chatrelay instance", cmd_ring, setup_ring)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to frames.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--type", "-t", default=None, help="Only frames of this type (message, response, error...)")
        p.add_argument("--user", default=None, help="Only frames for this user id")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail", "watch"],
                 "Live frame tap of the gateway", cmd_tap, setup_tap)

    def setup_keygen(p):
        p.add_argument("--name", default="Unnamed Key", help="Label for the key")
        p.add_argument("--permission", "-p", action="append", default=None,
                       help="Permission to grant (repeatable; default chat:read + chat:write)")
        p.add_argument("--rate-limit", type=int, default=100, help="Requests per window")

    _add_command(sub, ["keygen", "newkey"],
                 "Generate an API key entry for config.yaml", cmd_keygen, setup_keygen)

    _add_command(sub, ["banner", "tone"], "Print the banner", cmd_banner)
    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        cmd_banner(args)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
