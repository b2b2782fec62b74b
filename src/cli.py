#!/usr/bin/env python3
"""
ResolveChain Command Line Interface.

Commands:
    - serve: Start the API server
    - hash: Compute the commitment for an evidence JSON document
    - verify: Verify a commitment (or a stored resolution) against the ledger
    - check: Verify installation and configuration
    - info: Display system information

Usage:
    resolvechain serve [--host HOST] [--port PORT] [--debug] [--production]
    resolvechain hash evidence.json
    resolvechain hash - < evidence.json
    resolvechain verify --hash 0x...
    resolvechain verify --resolution-id ID
    resolvechain check
    resolvechain info
    resolvechain --version
"""

import argparse
import json
import os
import platform
import sys

# Ensure src is in path when running from source
if os.path.exists(os.path.join(os.path.dirname(__file__), "resolution_engine.py")):
    sys.path.insert(0, os.path.dirname(__file__))

from config import Settings  # noqa: E402
from errors import ResolveChainError  # noqa: E402
from monitoring import configure_logging  # noqa: E402

VERSION = "0.1.0"


def _load_settings() -> Settings:
    settings = Settings.from_env()
    configure_logging(settings.log_level, json_output=settings.log_format == "json")
    return settings


def cmd_serve(args):
    """Start the ResolveChain API server."""
    from api import create_app
    from api.state import build_services

    settings = _load_settings()
    host = args.host or settings.host
    port = args.port or settings.port
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"

    for problem in settings.validate():
        print(f"Warning: {problem}", file=sys.stderr)

    flask_app = create_app(build_services(settings))
    print(f"Starting ResolveChain API server on {host}:{port}")

    if not args.production:
        flask_app.run(host=host, port=port, debug=debug, threaded=True)
        return 0

    try:
        import gunicorn.app.base
    except ImportError:
        print("Error: gunicorn not installed. Install with: pip install resolvechain[production]")
        return 1

    class StandaloneApplication(gunicorn.app.base.BaseApplication):
        """Gunicorn wrapper serving an already-built Flask app."""

        def __init__(self, app, options=None):
            self.options = options or {}
            self.application = app
            super().__init__()

        def load_config(self):
            for key, value in self.options.items():
                if key in self.cfg.settings and value is not None:
                    self.cfg.set(key.lower(), value)

        def load(self):
            return self.application

    # Per-key locks and the in-flight attestation table live in process
    # memory, so one worker process serves all requests on threads.
    options = {
        "bind": f"{host}:{port}",
        "workers": 1,
        "threads": args.threads or int(os.getenv("THREADS", 8)),
        "worker_class": "gthread",
        "timeout": int(settings.confirmation_timeout) + 60,
        "accesslog": "-",
        "errorlog": "-",
    }
    StandaloneApplication(flask_app, options).run()
    return 0


def _read_json(path: str):
    if path == "-":
        return json.load(sys.stdin)
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def cmd_hash(args):
    """Compute the commitment for an evidence document."""
    from api.utils import parse_evidence
    from evidence_hashing import EVIDENCE_HASH_ALGORITHM, canonicalize, hash_evidence_hex
    from issue_registry import IssueRegistry
    from resolution_engine import ResolutionEngine

    settings = _load_settings()
    try:
        document = _read_json(args.evidence)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read evidence: {e}", file=sys.stderr)
        return 1

    if isinstance(document, dict) and isinstance(document.get("evidence"), dict):
        document = document["evidence"]

    engine = ResolutionEngine(IssueRegistry(), percentage_tolerance=settings.percentage_tolerance)
    try:
        evidence = engine.validate_evidence(parse_evidence(document))
    except ResolveChainError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if args.canonical:
        print(canonicalize(evidence).decode("utf-8"))
    if args.json:
        print(json.dumps({
            "evidence_hash": hash_evidence_hex(evidence),
            "algorithm": EVIDENCE_HASH_ALGORITHM,
            "percentage_decrease": evidence.percentage_decrease,
        }, indent=2))
    else:
        print(hash_evidence_hex(evidence))
    return 0


def cmd_verify(args):
    """Verify a commitment or a stored resolution against the configured ledger."""
    from api.state import build_services
    from retry import RetryConfig, retry_call

    settings = _load_settings()
    services = build_services(settings)

    try:
        result = retry_call(
            services.verifier.verify,
            kwargs={
                "resolution_id": args.resolution_id,
                "evidence_hash": args.hash,
                "strict": args.strict,
            },
            config=RetryConfig.from_env(),
        )
    except ResolveChainError as e:
        print(json.dumps(e.to_dict(), indent=2))
        return 2

    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.verified else 1


def cmd_check(args):
    """Check installation and configuration."""
    from api.state import build_services

    print("ResolveChain Installation Check")
    print("=" * 40)

    settings = _load_settings()
    checks = [("Configuration", "OK")]
    checks.extend(("Configuration", f"FAIL: {problem}") for problem in settings.validate())

    try:
        services = build_services(settings)
    except (ValueError, ResolveChainError) as e:
        checks.append(("Services", f"FAIL: {e}"))
        services = None

    if services is not None:
        checks.append(("Services", "OK"))
        for name, store in services.stores().items():
            status = "OK" if store.is_available() else "FAIL (not available)"
            checks.append((f"Storage {name} ({type(store).__name__})", status))

        ledger_name = f"Ledger ({type(services.ledger).__name__}, {services.ledger.chain_config.name})"
        checks.append((ledger_name, "OK" if services.ledger.is_available() else "WARN (unreachable)"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status == "OK" else ("○" if status.startswith("WARN") else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def cmd_info(args):
    """Display system information."""
    from evidence_hashing import CANONICAL_VERSION, EVIDENCE_HASH_ALGORITHM

    settings = Settings.from_env()

    print("ResolveChain System Information")
    print("=" * 40)
    print(f"Version: {VERSION}")
    print(f"Python: {platform.python_version()}")
    print(f"Platform: {platform.platform()}")
    print(f"Evidence hash: {EVIDENCE_HASH_ALGORITHM} (canonical v{CANONICAL_VERSION})")

    print()
    print("Configuration:")
    for key, value in settings.to_dict().items():
        print(f"  {key}: {value}")

    try:
        chain = settings.chain_config()
    except ValueError as e:
        print(f"\nNetwork: Error: {e}")
        return 1

    print()
    print("Network:")
    for key, value in chain.to_dict().items():
        print(f"  {key}: {value}")
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="resolvechain",
        description="ResolveChain - verifiable exchange issue resolutions",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {VERSION}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: PORT or 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument(
        "--production", action="store_true", help="Use gunicorn for production"
    )
    serve_parser.add_argument("--threads", type=int, help="Worker threads (production mode)")

    hash_parser = subparsers.add_parser("hash", help="Compute an evidence commitment")
    hash_parser.add_argument("evidence", help="Evidence JSON file, or - for stdin")
    hash_parser.add_argument("--canonical", action="store_true", help="Also print the canonical form")
    hash_parser.add_argument("--json", action="store_true", help="Print a JSON result")

    verify_parser = subparsers.add_parser("verify", help="Verify against the ledger")
    target = verify_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--hash", help="Evidence commitment (0x-prefixed hex)")
    target.add_argument("--resolution-id", help="Stored resolution id")
    verify_parser.add_argument("--strict", action="store_true", help="Fail on hash mismatch")

    subparsers.add_parser("check", help="Check installation and configuration")
    subparsers.add_parser("info", help="Display system information")

    args = parser.parse_args(argv)

    commands = {
        "serve": cmd_serve,
        "hash": cmd_hash,
        "verify": cmd_verify,
        "check": cmd_check,
        "info": cmd_info,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)
    sys.exit(command(args))


if __name__ == "__main__":
    main()
