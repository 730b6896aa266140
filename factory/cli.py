"""factory.cli

Command line entry point for the security tooling.

Design constraints:
- argparse-based.
- Lazy imports: do not import crypto at parse time.
- Plaintext goes in on stdin or --value and never comes back out.
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from factory.core.config import FactoryConfig


@dataclass(frozen=True)
class CliContext:
    repo_root: Path
    config: FactoryConfig


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mail-factory",
        description="Mail server factory: secrets and audit tooling.",
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit.")
    parser.add_argument("--config", type=Path, default=None, help="Path to a YAML config file.")

    sub = parser.add_subparsers(dest="command")

    p_enc = sub.add_parser("encrypt", help="Encrypt a value with the master key (MAIL_FACTORY_MASTER_KEY)")
    p_enc.add_argument("--value", default=None, help="Value to encrypt (default: read stdin).")

    p_check = sub.add_parser("check-secrets", help="Report which secrets are resolvable")
    p_check.add_argument("keys", nargs="+")

    sub.add_parser("audit-sweep", help="Run one audit retention pass")

    return parser


def _print_version() -> None:
    from factory import __version__

    print(f"mail-factory v{__version__}")


def _load_config(repo_root: Path, args: argparse.Namespace) -> FactoryConfig:
    from factory.core.config import FactoryConfig

    if args.config is not None:
        return FactoryConfig.from_yaml(args.config)
    return FactoryConfig.from_repo_defaults(repo_root)


def _cmd_encrypt(ctx: CliContext, args: argparse.Namespace) -> int:
    from factory.core.exceptions import SecurityError
    from factory.security.secrets import SecretResolver

    cfg = ctx.config
    value = args.value if args.value is not None else sys.stdin.read().rstrip("\n")
    resolver = SecretResolver(cfg.secrets)
    try:
        print(resolver.encrypt_value(value, key="cli"))
    except SecurityError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


def _cmd_check_secrets(ctx: CliContext, args: argparse.Namespace) -> int:
    from factory.security.secrets import SecretResolver

    cfg = ctx.config
    resolver = SecretResolver(cfg.secrets)
    missing = 0
    width = max(len(k) for k in args.keys)
    for key in args.keys:
        found = resolver.get_secret(key) is not None
        missing += 0 if found else 1
        print(f"{key:<{width}}  {'configured' if found else 'missing'}")
    return 1 if missing else 0


def _cmd_audit_sweep(ctx: CliContext, args: argparse.Namespace) -> int:
    from factory.security.audit import AuditTrail

    cfg = ctx.config
    deleted = AuditTrail(cfg.audit).cleanup()
    for path in deleted:
        print(f"deleted {path.name}")
    print(f"{len(deleted)} file(s) removed")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    from factory.core.exceptions import ConfigError

    repo_root = Path.cwd()
    try:
        cfg = _load_config(repo_root, args)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    logging.basicConfig(level=cfg.logging.level.upper(), stream=sys.stderr)

    ctx = CliContext(repo_root=repo_root, config=cfg)

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "encrypt": _cmd_encrypt,
        "check-secrets": _cmd_check_secrets,
        "audit-sweep": _cmd_audit_sweep,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    return int(fn(ctx, args))


if __name__ == "__main__":
    raise SystemExit(main())
