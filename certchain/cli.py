#!/usr/bin/env python3
"""
CertChain Command Line Interface

Usage:
    certchain hash --file <fields.json> [--salt <hex>]
    certchain conflicts
    certchain resolve-conflicts [--certificate-id <id>]
    certchain validate-hashes [--fix]
    certchain stats
    certchain debug <certificate_id>
    certchain sync
    certchain sync-status --issued-by <wallet>
    certchain diagnose
    certchain keygen [--output <keypair.json>]

Store, chain and signer come from the environment (see certchain.config).
"""

import argparse
import json
import sys
from typing import List, Optional


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def emit(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _service():
    from certchain.backends import build_service
    return build_service()


def cmd_hash(args) -> int:
    """Compute certificate hashes for a JSON file of certificate fields."""
    from certchain.hashing import CertificateFields, generate_deterministic_hash, generate_hash

    fields = CertificateFields.from_mapping(load_json(args.file))
    out = {"deterministic_hash": generate_deterministic_hash(fields)}
    if args.salt:
        out["salted_hash"] = generate_hash(fields, salt=args.salt)
    emit(out)
    return 0


def cmd_conflicts(args) -> int:
    report = _service().resolver.find_hash_conflicts()
    emit(report.to_dict())
    return 1 if report.has_conflicts else 0


def cmd_resolve_conflicts(args) -> int:
    svc = _service()
    if args.certificate_id:
        result = svc.resolve_hash_conflict(args.certificate_id)
        emit(result)
        return 0 if result["success"] else 1
    result = svc.resolver.resolve_all_hash_conflicts()
    emit(result.to_dict())
    return 0 if result.success else 1


def cmd_validate_hashes(args) -> int:
    from certchain.diagnostics import CertificateDiagnostics

    svc = _service()
    if args.fix:
        result = svc.resolver.regenerate_invalid_hashes()
        emit(result.to_dict())
        return 0 if result.success else 1
    report = CertificateDiagnostics(svc.store, svc.chain).validate_all_hashes()
    emit(report)
    return 0 if report["invalid"] == 0 else 1


def cmd_stats(args) -> int:
    from certchain.diagnostics import CertificateDiagnostics

    svc = _service()
    emit(CertificateDiagnostics(svc.store, svc.chain).hash_statistics())
    return 0


def cmd_debug(args) -> int:
    from certchain.diagnostics import CertificateDiagnostics

    svc = _service()
    report = CertificateDiagnostics(svc.store, svc.chain).debug_certificate(args.certificate_id)
    emit(report)
    return 0 if report["found"] else 1


def cmd_sync(args) -> int:
    from certchain.errors import ChainUnavailableError, SignerUnavailableError

    try:
        result = _service().sync_certificates()
    except (ChainUnavailableError, SignerUnavailableError) as e:
        print(f"sync unavailable: {e}", file=sys.stderr)
        return 2
    emit(result.to_dict())
    return 0 if result.success else 1


def cmd_sync_status(args) -> int:
    from certchain.errors import ChainUnavailableError

    try:
        status = _service().sync_status(args.issued_by)
    except ChainUnavailableError as e:
        print(f"sync status unavailable: {e}", file=sys.stderr)
        return 2
    emit(status.to_dict())
    return 1 if status.error else 0


def cmd_diagnose(args) -> int:
    from certchain import config
    from certchain.diagnostics import CertificateDiagnostics

    svc = _service()
    report = CertificateDiagnostics(svc.store, svc.chain).run_all(config.load_admin_wallets())
    report["config"] = config.validate_config()
    emit(report)
    return 0 if report["ok"] else 1


def cmd_keygen(args) -> int:
    """Generate an Ed25519 keypair in the solana-keygen JSON format."""
    from certchain.signing import KeypairSigner

    signer = KeypairSigner.generate()
    keypair = list(signer.secret_key())
    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            json.dump(keypair, f)
        print(f"Keypair saved to: {args.output}", file=sys.stderr)
    else:
        emit({"secret_key_base58": signer.secret_key_base58()})
    print(f"Public key: {signer.public_key}", file=sys.stderr)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CertChain certificate operations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  certchain hash -f fields.json
  certchain conflicts
  certchain resolve-conflicts
  certchain debug CERT-2024-001
  certchain sync-status --issued-by <wallet>
  certchain keygen -o institution.json
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    hash_parser = subparsers.add_parser("hash", help="Compute certificate hashes")
    hash_parser.add_argument("-f", "--file", required=True, help="JSON file of certificate fields")
    hash_parser.add_argument("-s", "--salt", help="Salt for the salted hash")

    subparsers.add_parser("conflicts", help="Report duplicate certificate hashes")

    resolve_parser = subparsers.add_parser("resolve-conflicts", help="Regenerate duplicate hashes")
    resolve_parser.add_argument("-c", "--certificate-id", help="Only this certificate")

    validate_parser = subparsers.add_parser("validate-hashes", help="Check hash formats")
    validate_parser.add_argument("--fix", action="store_true", help="Regenerate malformed hashes")

    subparsers.add_parser("stats", help="Hash statistics")

    debug_parser = subparsers.add_parser("debug", help="Debug one certificate")
    debug_parser.add_argument("certificate_id")

    subparsers.add_parser("sync", help="Re-issue database certificates missing on chain")

    status_parser = subparsers.add_parser("sync-status", help="Compare database and chain")
    status_parser.add_argument("-i", "--issued-by", required=True, help="Institution wallet")

    subparsers.add_parser("diagnose", help="Connectivity, schema and policy checks")

    keygen_parser = subparsers.add_parser("keygen", help="Generate a signing keypair")
    keygen_parser.add_argument("-o", "--output", help="Output keypair JSON file")

    return parser


COMMANDS = {
    "hash": cmd_hash,
    "conflicts": cmd_conflicts,
    "resolve-conflicts": cmd_resolve_conflicts,
    "validate-hashes": cmd_validate_hashes,
    "stats": cmd_stats,
    "debug": cmd_debug,
    "sync": cmd_sync,
    "sync-status": cmd_sync_status,
    "diagnose": cmd_diagnose,
    "keygen": cmd_keygen,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 2

    from certchain import config
    from certchain.logging_config import configure_logging
    # stdout carries command output
    configure_logging(config.LOG_LEVEL if config.is_debug() else "WARNING",
                      json_format=config.LOG_JSON, stream=sys.stderr)

    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
