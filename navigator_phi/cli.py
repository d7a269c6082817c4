"""
navigator-phi — operator commands for key rotation and compliance status.

Usage:
    navigator-phi generate-key
    navigator-phi rotate phi-key [--reason R] [--dry-run] [--actor NAME] [--keys-deployed]
    navigator-phi rotate session-secret [--reason R] [--actor NAME]
    navigator-phi end-grace [--actor NAME]
    navigator-phi status
    navigator-phi release-stale {PHI_ENCRYPTION_KEY,SESSION_SECRET} --older-than-minutes N

Secrets are read from the environment, never from arguments:
    PHI_ENCRYPTION_KEY, PHI_ENCRYPTION_KEY_PREVIOUS, SESSION_SECRET,
    NEW_KEY (phi-key), NEW_SECRET (session-secret), ROTATION_REASON,
    DATABASE_URL

PHI key rotation order:
    1. generate-key, then deploy every application process with
       PHI_ENCRYPTION_KEY=<new> and PHI_ENCRYPTION_KEY_PREVIOUS=<old>.
       The applications now write under the new key and read under both.
    2. rotate phi-key with the same environment and NEW_KEY=<new>. The
       command refuses to run unless the environment already carries the
       new key as active and the old one as previous; --keys-deployed
       overrides the check when the applications are known to be updated.
    3. end-grace once the rotation completed. It verifies that no row
       still needs the old key, then drops it.
    4. Remove PHI_ENCRYPTION_KEY_PREVIOUS from the deployment.
A rotation started before step 1 leaves the applications unable to read
rows already re-encrypted under the new key.

Exit codes: 0 ok, 1 unexpected error, 2 invalid input or configuration,
3 rotation already in progress, 4 partial failure (re-run to resume).
"""
import os
import sys
import asyncio
import logging
import argparse
from typing import Any, Awaitable, Callable, Optional
from datetime import timedelta
from dataclasses import dataclass

import orjson
import asyncpg

from .exceptions import (
    ConfigurationError,
    PartialRotationFailure,
    PHIError,
    RotationInProgressError,
    ValidationError,
)
from .audit.compliance import RotationMonitor
from .audit.logger import AuditLogger
from .sessions import SessionAuthenticator
from .storage.postgres import (
    PgAuditStore,
    PgRotationLedger,
    PgSessionStore,
    create_schema,
    pg_repository_factory,
)
from .vault.config import KeyRing, VaultConfig, generate_key, parse_hex_key
from .vault.key_rotation import RotationOrchestrator
from .vault.ledger import KeyType, RotationLedger, RotationReason
from .vault.registry import default_registry

logger = logging.getLogger("navigator.vault")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INVALID = 2
EXIT_IN_PROGRESS = 3
EXIT_PARTIAL = 4


@dataclass
class Components:
    """Wired collaborators for one CLI invocation."""

    config: VaultConfig
    key_ring: KeyRing
    ledger: RotationLedger
    audit: AuditLogger
    orchestrator: RotationOrchestrator
    monitor: RotationMonitor
    pool: Any = None

    async def close(self) -> None:
        await self.audit.close()
        if self.pool is not None:
            await self.pool.close()


ComponentFactory = Callable[[VaultConfig, dict], Awaitable[Components]]


async def build_components(config: VaultConfig, environ: dict) -> Components:
    """Wire PostgreSQL backends from ``DATABASE_URL``."""
    dsn = environ.get("DATABASE_URL")
    if not dsn:
        raise ConfigurationError("DATABASE_URL environment variable is required")
    pool = await asyncpg.create_pool(dsn, min_size=1, max_size=config.rotation_workers + 2)
    await create_schema(pool)
    ring = KeyRing(config.key_material())
    ring.self_test()
    ledger = PgRotationLedger(pool)
    audit = AuditLogger.from_config(PgAuditStore(pool), config)
    await audit.start()
    sessions = SessionAuthenticator(PgSessionStore(pool), config.session_secret_bytes())
    orchestrator = RotationOrchestrator(
        default_registry(pg_repository_factory(pool)),
        ledger, ring, audit, sessions,
        page_size=config.rotation_page_size,
        max_workers=config.rotation_workers,
    )
    return Components(
        config=config, key_ring=ring, ledger=ledger, audit=audit,
        orchestrator=orchestrator, monitor=RotationMonitor(ledger, audit),
        pool=pool,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="navigator-phi",
        description="PHI key rotation and compliance status",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("generate-key", help="Print a new random 256-bit key (64 hex chars)")

    rotate = sub.add_parser("rotate", help="Rotate a key")
    rotate.add_argument("target", choices=["phi-key", "session-secret"])
    rotate.add_argument(
        "--reason",
        choices=[r.value for r in RotationReason],
        default=None,
        help="Rotation reason (default: $ROTATION_REASON or manual)",
    )
    rotate.add_argument("--dry-run", action="store_true", help="Count rows only (phi-key)")
    rotate.add_argument("--actor", default=None, help="Operator recorded in the ledger")
    rotate.add_argument(
        "--keys-deployed",
        action="store_true",
        help="Applications already run with the new key and the previous key (phi-key)",
    )

    grace = sub.add_parser("end-grace", help="Drop the previous PHI key once unused")
    grace.add_argument("--actor", default=None, help="Operator recorded in the audit trail")

    sub.add_parser("status", help="Key ages against rotation policy")

    stale = sub.add_parser("release-stale", help="Fail crashed in-progress rotations")
    stale.add_argument("key_type", choices=[k.value for k in KeyType])
    stale.add_argument("--older-than-minutes", type=int, required=True)
    return parser


def _emit(payload: Any) -> None:
    sys.stdout.write(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode("utf-8") + "\n")


def _require_deployed(new: bytes, components: Components, args) -> None:
    """Refuse a PHI rotation the running applications cannot follow.

    Raises:
        ValidationError: The environment does not carry the new key as
            active with a previous key, and --keys-deployed was not given.
    """
    material = components.key_ring.current
    deployed = material.active == new and material.retired is not None
    if deployed:
        logger.info(
            "Keys deployed: active=%s previous=%s",
            material.fingerprint, material.retired_fingerprint,
        )
        return
    if not args.keys_deployed:
        raise ValidationError(
            "Deploy PHI_ENCRYPTION_KEY=<new key> and "
            "PHI_ENCRYPTION_KEY_PREVIOUS=<old key> to every application first, "
            "then re-run with the same environment (or pass --keys-deployed)"
        )
    logger.warning(
        "--keys-deployed: assuming every application already runs with "
        "PHI_ENCRYPTION_KEY=<new key> and PHI_ENCRYPTION_KEY_PREVIOUS=<old key>"
    )


async def _rotate(args, environ: dict, components: Components) -> int:
    reason = args.reason or environ.get("ROTATION_REASON") or RotationReason.MANUAL.value
    actor = args.actor or environ.get("USER")
    orchestrator = components.orchestrator
    if args.target == "phi-key":
        new_key = environ.get("NEW_KEY")
        if not new_key:
            raise ValidationError("NEW_KEY environment variable is required")
        if not args.dry_run:
            _require_deployed(parse_hex_key(new_key, "NEW_KEY"), components, args)
        summary = await orchestrator.rotate_phi_key(
            new_key, reason, dry_run=args.dry_run, rotated_by=actor,
        )
        _emit(summary.to_dict())
        return EXIT_OK
    if args.dry_run:
        raise ValidationError("--dry-run only applies to phi-key")
    new_secret = environ.get("NEW_SECRET")
    if not new_secret:
        raise ValidationError("NEW_SECRET environment variable is required")
    summary = await orchestrator.rotate_session_secret(new_secret, reason, rotated_by=actor)
    _emit(summary.to_dict())
    logger.warning("Update the deployment: SESSION_SECRET=<new secret>")
    return EXIT_OK


async def _end_grace(args, environ: dict, components: Components) -> int:
    result = await components.orchestrator.end_grace(
        rotated_by=args.actor or environ.get("USER"),
    )
    _emit(result)
    logger.warning("Remove PHI_ENCRYPTION_KEY_PREVIOUS from the deployment")
    return EXIT_OK


async def _status(components: Components) -> int:
    statuses = await components.monitor.check_all()
    history = await components.ledger.history(limit=10)
    _emit({
        "keys": [s.to_dict() for s in statuses],
        "active_fingerprint": components.key_ring.current.fingerprint,
        "retired_fingerprint": components.key_ring.current.retired_fingerprint,
        "history": [r.to_dict() for r in history],
    })
    return EXIT_OK


async def _release_stale(args, components: Components) -> int:
    if args.older_than_minutes < 1:
        raise ValidationError("--older-than-minutes must be positive")
    released = await components.ledger.release_stale(
        KeyType(args.key_type), timedelta(minutes=args.older_than_minutes),
    )
    _emit({"released": [r.to_dict() for r in released]})
    return EXIT_OK


async def run(
    args: argparse.Namespace,
    environ: dict,
    factory: ComponentFactory = build_components,
) -> int:
    if args.command == "generate-key":
        sys.stdout.write(generate_key() + "\n")
        return EXIT_OK
    config = VaultConfig.from_env(environ)
    components = await factory(config, environ)
    try:
        if args.command == "rotate":
            return await _rotate(args, environ, components)
        if args.command == "end-grace":
            return await _end_grace(args, environ, components)
        if args.command == "status":
            return await _status(components)
        return await _release_stale(args, components)
    finally:
        await components.close()


def main(
    argv: Optional[list[str]] = None,
    *,
    environ: Optional[dict] = None,
    factory: ComponentFactory = build_components,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    env = dict(os.environ if environ is None else environ)
    try:
        return asyncio.run(run(args, env, factory))
    except (ConfigurationError, ValidationError) as err:
        logger.error("%s", err)
        return EXIT_INVALID
    except RotationInProgressError as err:
        logger.error("%s", err)
        return EXIT_IN_PROGRESS
    except PartialRotationFailure as err:
        logger.error("%s", err)
        _emit({
            "error": str(err),
            "record_id": err.record_id,
            "records_affected": err.records_affected,
            "failures": err.failures,
        })
        return EXIT_PARTIAL
    except PHIError as err:
        logger.error("%s", err)
        return EXIT_ERROR
    except Exception as err:
        logger.exception("Unexpected error: %s", err)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
