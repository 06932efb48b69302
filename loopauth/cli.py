"""Command-line interface for loopauth sign-in and configuration."""

from __future__ import annotations

import argparse
import json
import sys

from pathlib import Path

from .config import _REDACTED, _SENSITIVE_FIELDS


def main(argv: list[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="loopauth",
        description="OAuth2 sign-in over a loopback redirect, with PKCE",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log listener and exchange activity to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # login command
    login_parser = subparsers.add_parser(
        "login",
        help="Sign in through the system browser and print the tokens",
    )
    login_parser.add_argument(
        "--timeout",
        "-t",
        type=float,
        default=None,
        help="Seconds to wait for the browser redirect (uses config default)",
    )
    login_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL instead of opening a browser",
    )
    login_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the raw token response, tokens included",
    )

    # verifier command
    subparsers.add_parser(
        "verifier",
        help="Print a fresh PKCE code verifier",
    )

    # challenge command
    challenge_parser = subparsers.add_parser(
        "challenge",
        help="Print the S256 code challenge of a verifier",
    )
    challenge_parser.add_argument("verifier", type=str, help="Code verifier")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize a loopauth.toml configuration file",
    )
    init_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Overwrite existing configuration file",
    )
    init_parser.add_argument(
        "--path",
        "-p",
        type=str,
        default="loopauth.toml",
        help="Path for configuration file (default: loopauth.toml)",
    )

    args = parser.parse_args(argv)

    from .log import configure, enable_debug

    configure()
    if args.verbose:
        enable_debug()

    if args.command == "login":
        return handle_login(args)
    if args.command == "verifier":
        return handle_verifier(args)
    if args.command == "challenge":
        return handle_challenge(args)
    if args.command == "config":
        return handle_config(args)
    if args.command == "init":
        return handle_init(args)
    parser.print_help()
    return 0


def handle_login(args: argparse.Namespace) -> int:
    """Handle the login command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        ``0`` on success, ``1`` if cancelled or timed out, ``2`` on error.
    """
    from .auth.browser import print_url_opener
    from .auth.flow import AuthorizationBridge
    from .config import get_settings
    from .exceptions import LoopAuthException
    from .log import redact_sensitive_data

    settings = get_settings()
    bridge = AuthorizationBridge.from_settings(
        settings,
        opener=print_url_opener if args.no_browser else None,
        timeout=args.timeout,
    )

    try:
        tokens = bridge.sign_in_sync(redirect_scheme=settings.oauth.redirect_scheme)
    except LoopAuthException as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        bridge.cancel()
        print("Sign-in cancelled.", file=sys.stderr)
        return 1

    if tokens is None:
        print("Sign-in cancelled or timed out.", file=sys.stderr)
        return 1

    payload = tokens.raw if args.json else redact_sensitive_data(tokens.raw)
    print(json.dumps(payload, indent=2))
    return 0


def handle_verifier(_args: argparse.Namespace) -> int:
    """Handle the verifier command."""
    from .webauth import generate_code_verifier

    print(generate_code_verifier())
    return 0


def handle_challenge(args: argparse.Namespace) -> int:
    """Handle the challenge command."""
    from .auth.pkce import PKCEChallenge

    try:
        pkce = PKCEChallenge.from_verifier(args.verifier)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    print(pkce.challenge)
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import LoopAuthSettings

    settings = LoopAuthSettings()

    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def handle_init(args: argparse.Namespace) -> int:
    """Handle the init command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import LoopAuthSettings

    path = Path(args.path)

    if path.exists() and not args.force:
        print(f"Error: {path} already exists. Use --force to overwrite.", file=sys.stderr)
        return 1

    settings = LoopAuthSettings()
    # Secrets are never written out; leave their keys commented.
    toml_content = "\n".join(
        f'# {line.split(" = ", 1)[0]} = ""'
        if line.split(" = ", 1)[0] in _SENSITIVE_FIELDS and _REDACTED in line
        else line
        for line in settings.to_toml().splitlines()
    )

    header = """# loopauth Configuration File
#
# Environment variables can override any setting:
#   LOOPAUTH_OAUTH__CLIENT_ID="1234.apps.googleusercontent.com"
#   LOOPAUTH_OAUTH__CLIENT_SECRET="..."
#   LOOPAUTH_LISTENER__TIMEOUT_SECONDS=120
#   LOOPAUTH_LOG__LEVEL="DEBUG"
#
# Use nested keys with __ (double underscore) delimiter.

"""
    path.write_text(header + toml_content, encoding="utf-8")
    print(f"Created {path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
