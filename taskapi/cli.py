"""
TaskAPI CLI — serve the API and manage credentials.

Commands:
- taskapi serve         — Start the API under uvicorn
- taskapi issue-token   — Print a bearer token (JWT or Fernet)
- taskapi hash-key      — Generate a service API key and its bcrypt hash
- taskapi check-config  — Validate a taskapi.yaml
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional

from taskapi.engine.errors import TaskAPIConfigError

logger = logging.getLogger("taskapi.cli")

_FORMAT_FOR_TYPE = {"jwt": "jwt", "token": "fernet"}


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="taskapi",
        description="TaskAPI — tasks and comments over a key-value store",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # taskapi serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--config", help="Path to taskapi.yaml (default: auto-discover)")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8787, help="Port (default: 8787)")

    # taskapi issue-token
    token_parser = subparsers.add_parser("issue-token", help="Print a bearer token (JWT or Fernet)")
    token_parser.add_argument("--config", help="Path to taskapi.yaml")
    token_parser.add_argument("--subject", default="cli", help="Value of the 'sub' claim")
    token_parser.add_argument(
        "--format", choices=["jwt", "fernet"],
        help="Token format (default: follows auth.type)",
    )

    # taskapi hash-key
    subparsers.add_parser("hash-key", help="Generate an API key and its bcrypt hash")

    # taskapi check-config
    check_parser = subparsers.add_parser("check-config", help="Validate a taskapi.yaml")
    check_parser.add_argument("--config", help="Path to taskapi.yaml")

    args = parser.parse_args(argv)

    if args.command == "serve":
        return cmd_serve(args)
    elif args.command == "issue-token":
        return cmd_issue_token(args)
    elif args.command == "hash-key":
        return cmd_hash_key(args)
    elif args.command == "check-config":
        return cmd_check_config(args)
    else:
        parser.print_help()
        return 0


def _load(args: argparse.Namespace):
    from taskapi.engine.config import load_config

    return load_config(args.config)


def cmd_serve(args: argparse.Namespace) -> int:
    """Start uvicorn with an app built from the config."""
    import uvicorn

    from taskapi.api.app import create_app

    try:
        config = _load(args)
    except TaskAPIConfigError as e:
        print(f"[ERROR] {e.message}")
        return 1

    logging.basicConfig(
        level=config.logging.level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print(f"Starting {config.name} on http://{args.host}:{args.port}{config.api_prefix}")
    uvicorn.run(create_app(config), host=args.host, port=args.port)
    return 0


def cmd_issue_token(args: argparse.Namespace) -> int:
    """Mint a bearer token the configured verifier will accept."""
    from taskapi.engine.security import JWTVerifier, SignedTokenVerifier

    try:
        config = _load(args)
    except TaskAPIConfigError as e:
        print(f"[ERROR] {e.message}")
        return 1

    token_format = args.format or ("fernet" if config.auth.type == "token" else "jwt")
    if config.auth.type == "api_key":
        print("[WARN] auth.type is 'api_key'; bearer tokens will be rejected by this config")
    elif config.auth.type != "any" and token_format != _FORMAT_FOR_TYPE[config.auth.type]:
        print(f"[WARN] auth.type is '{config.auth.type}'; {token_format} tokens will be rejected by this config")

    if token_format == "jwt":
        verifier = JWTVerifier(
            config.auth.token_secret,
            algorithm=config.auth.jwt_algorithm,
            max_age=config.auth.token_max_age,
        )
    else:
        verifier = SignedTokenVerifier(config.auth.token_secret, max_age=config.auth.token_max_age)
    print(verifier.issue_token({"sub": args.subject}))
    return 0


def cmd_hash_key(args: argparse.Namespace) -> int:
    """Generate a key; the hash goes under auth.api_keys in taskapi.yaml."""
    from taskapi.engine.security import generate_api_key

    api_key, api_key_hash = generate_api_key()
    print(f"API key (shown once): {api_key}")
    print(f"bcrypt hash:          {api_key_hash}")
    return 0


def cmd_check_config(args: argparse.Namespace) -> int:
    try:
        config = _load(args)
    except TaskAPIConfigError as e:
        print(f"[ERROR] {e.message}")
        return 1

    summary = config.model_dump()
    summary["auth"]["token_secret"] = "***"
    summary["auth"]["api_keys"] = sorted(summary["auth"]["api_keys"])
    print(json.dumps(summary, indent=2))
    print("\n[OK] Configuration valid")
    return 0


if __name__ == "__main__":
    sys.exit(main())
