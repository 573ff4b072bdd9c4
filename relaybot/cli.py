#!/usr/bin/env python3
"""CLI for running and inspecting the relaybot daemon."""
from __future__ import annotations

import argparse
import sys
from typing import Optional

from relaybot import config
from relaybot.credentials import CredentialStore
from relaybot.errors import ConfigurationError
from relaybot.remote import parse_locator
from relaybot.transport import load_factory

EXIT_CONFIG = 2


def cmd_run(args):
    """Run the daemon in the foreground until it halts."""
    from relaybot import manager

    return manager.main()


def cmd_check(args):
    """Validate configuration without touching the network."""
    settings = config.settings()
    load_factory(settings.transport_factory)

    print(f"Home:           {settings.home_dir}")
    print(f"Credentials:    {settings.creds_path}")
    print(f"Plugins:        {settings.plugin_path}")
    print(f"Transport:      {settings.transport_factory}")
    print(f"Mode:           {settings.mode}")
    print(f"Health port:    {settings.host}:{settings.port}")
    behaviors = [
        name for name in ("auto_react", "auto_status_seen", "auto_status_react", "auto_status_reply")
        if getattr(settings, name)
    ]
    print(f"Behaviors:      {', '.join(behaviors) or 'none'}")

    if CredentialStore(settings.creds_path).exists():
        source = "local credentials"
    elif settings.session_locator:
        source = f"remote archive ({parse_locator(settings.session_locator)})"
    else:
        source = "interactive pairing"
    print(f"Session source: {source}")
    print("Configuration OK")
    return 0


def cmd_reset_session(args):
    """Delete the local credential blob so the next run pairs again."""
    settings = config.settings()
    store = CredentialStore(settings.creds_path)
    if store.clear():
        print(f"Removed {settings.creds_path}")
    else:
        print(f"No credentials at {settings.creds_path}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="relaybot",
        description="Messaging bot daemon: session bootstrap, reconnecting connection, event handlers"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run
    subparsers.add_parser("run", help="Run the daemon (default)")

    # check
    subparsers.add_parser("check", help="Validate configuration and show the session source")

    # reset-session
    subparsers.add_parser("reset-session", help="Delete local credentials to force pairing")

    args = parser.parse_args(argv)

    commands = {
        "run": cmd_run,
        "check": cmd_check,
        "reset-session": cmd_reset_session,
    }

    try:
        return commands[args.command or "run"](args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
