#!/usr/bin/env python3
"""Command-line interface for sealing and re-encrypting secrets."""

import argparse
import asyncio
import base64
import binascii
import logging
import signal
import ssl
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import orjson

from .boundary import AccessPolicy, CertificateClient, LocalUnsealer, RemoteUnsealer, UnsealService
from .crypto import (
    DirectoryKeyStore,
    KeyRegistry,
    SealerConfig,
    StaticKeySource,
    load_public_key_pem,
    seal,
)
from .data import ScopeClaim, SealedObject, SealingScope
from .exceptions import SealedError
from .rotation import EXIT_ABORTED, EXIT_FAILURES, EXIT_OK, DirectoryBackup, Reencryptor
from .store import FilesystemObjectStore
from .version import __version__

logger = logging.getLogger("navigator.sealed")

LOCAL_IDENTITY = "reencryptor"


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load_registry(key_dir: str, key_bits: int = 4096) -> KeyRegistry:
    """Registry of an existing key directory (never generates keys)."""
    store = DirectoryKeyStore(key_dir)
    if not store.load():
        raise SealedError(f"No sealing keys found in {key_dir}; run 'keygen' first")
    return KeyRegistry(store, key_bits=key_bits).initialize()


def _read_input(path: Optional[str]) -> bytes:
    if not path or path == "-":
        return sys.stdin.buffer.read()
    return Path(path).read_bytes()


def _write_output(path: Optional[str], data: bytes) -> None:
    if not path or path == "-":
        sys.stdout.buffer.write(data + b"\n")
        sys.stdout.flush()
        return
    Path(path).write_bytes(data + b"\n")


# =============================================================================
# keygen / cert / prune
# =============================================================================


def cmd_keygen(args: argparse.Namespace) -> int:
    config = SealerConfig.from_env(key_dir=args.key_dir, key_bits=args.key_bits)
    started = datetime.now(timezone.utc)
    registry = config.registry().initialize()
    # a fresh directory already got its first key from initialize()
    if args.rotate and registry.active().created_at < started:
        registry.generate()
    active = registry.active()
    print(f"active key: {active.id} (created {active.created_at.isoformat()}, {len(registry)} key(s))")
    return EXIT_OK


def cmd_cert(args: argparse.Namespace) -> int:
    registry = _load_registry(args.key_dir)
    _write_output(args.output, registry.public_key_pem().rstrip(b"\n"))
    return EXIT_OK


async def referenced_fingerprints(store: FilesystemObjectStore) -> set[Optional[str]]:
    """Fingerprints still referenced by stored sealed objects.

    Legacy envelopes contribute ``None``: they may need any key.
    """
    found: set[Optional[str]] = set()
    for obj in await store.list():
        for field_name in obj:
            try:
                found.add(obj[field_name].key_fingerprint)
            except SealedError:
                found.add(None)
    return found


def cmd_prune(args: argparse.Namespace) -> int:
    registry = _load_registry(args.key_dir)
    store = FilesystemObjectStore(args.store)
    referenced = asyncio.run(referenced_fingerprints(store))
    if None in referenced:
        logger.error("Legacy envelopes without fingerprint exist; refusing to prune")
        return EXIT_FAILURES
    cutoff = datetime.now(timezone.utc) - timedelta(days=args.older_than)
    removed = registry.prune(
        lambda pair: pair.created_at < cutoff and pair.id not in referenced
    )
    for pair in removed:
        print(f"pruned {pair.id} (created {pair.created_at.isoformat()})")
    return EXIT_OK


# =============================================================================
# seal
# =============================================================================


async def _remote_public_key(args: argparse.Namespace):
    async with CertificateClient(args.cert_url, token=args.token) as client:
        return await client.public_key()


def _public_key(args: argparse.Namespace):
    if args.cert:
        return load_public_key_pem(Path(args.cert).read_bytes())
    if args.cert_url:
        return asyncio.run(_remote_public_key(args))
    return _load_registry(args.key_dir).active().public_key


def _secret_values(doc: dict) -> dict[str, bytes]:
    values: dict[str, bytes] = {}
    for key, value in (doc.get("data") or {}).items():
        try:
            values[key] = base64.b64decode(value, validate=True)
        except (binascii.Error, TypeError) as err:
            raise ValueError(f"data[{key!r}] is not valid base64: {err}") from err
    for key, value in (doc.get("stringData") or {}).items():
        values[key] = str(value).encode("utf-8")
    return values


def seal_secret(doc: dict, public_key, scope: SealingScope = SealingScope.STRICT,
                namespace: Optional[str] = None, name: Optional[str] = None) -> SealedObject:
    """Seal a plain secret document (``data`` base64 / ``stringData``)."""
    metadata = doc.get("metadata") or {}
    namespace = namespace or metadata.get("namespace") or "default"
    name = name or metadata.get("name")
    if not name:
        raise ValueError("Secret has no metadata.name")
    label = ScopeClaim(namespace, name, scope).label()
    template = {
        key: value for key, value in {
            "type": doc.get("type"),
            "metadata": {
                k: v for k, v in metadata.items() if k in ("labels", "annotations")
            } or None,
        }.items() if value
    }
    obj = SealedObject(namespace, name, scope=scope, template=template)
    for key, value in _secret_values(doc).items():
        obj[key] = seal(value, label, public_key)
    return obj


def cmd_seal(args: argparse.Namespace) -> int:
    doc = orjson.loads(_read_input(args.input))
    obj = seal_secret(
        doc,
        _public_key(args),
        scope=SealingScope(args.scope),
        namespace=args.namespace,
        name=args.name,
    )
    if args.store:
        version = asyncio.run(FilesystemObjectStore(args.store).create(obj))
        print(f"created {obj.ref} (version {version})")
    else:
        _write_output(args.output, obj.to_json())
    return EXIT_OK


# =============================================================================
# reencrypt
# =============================================================================


def _client_ssl(args: argparse.Namespace) -> Optional[ssl.SSLContext]:
    if not (args.ca or args.client_cert):
        return None
    context = ssl.create_default_context(cafile=args.ca)
    if args.client_cert:
        context.load_cert_chain(args.client_cert, args.client_key)
    return context


async def run_reencrypt(args: argparse.Namespace, config: SealerConfig) -> int:
    store = FilesystemObjectStore(args.store)
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            pass

    remote = None
    if args.unseal_url:
        ssl_context = _client_ssl(args)
        remote = RemoteUnsealer(
            args.unseal_url, token=args.token, ssl_context=ssl_context,
            timeout=config.request_timeout,
        )
        async with CertificateClient(args.unseal_url, token=args.token, ssl_context=ssl_context) as certs:
            keys = StaticKeySource(await certs.public_key())
        unsealer = remote
    else:
        registry = _load_registry(args.key_dir, config.key_bits)
        service = UnsealService(registry, AccessPolicy({LOCAL_IDENTITY: ["*"]}))
        unsealer = LocalUnsealer(service, LOCAL_IDENTITY)
        keys = registry

    backup = DirectoryBackup(args.backup_dir) if args.backup_dir else None
    reencryptor = Reencryptor(store, unsealer, keys, config=config, backup=backup)
    try:
        report = await reencryptor.run(
            None if args.all_namespaces else args.namespace,
            dry_run=args.dry_run,
            force=args.force,
            cancel=cancel,
            timeout=args.timeout,
        )
    finally:
        if remote is not None:
            await remote.close()

    if args.report:
        _write_output(args.report, report.to_json())
    totals = report.counters
    print(
        f"processed={totals['processed']} skipped={totals['skipped']} "
        f"succeeded={totals['succeeded']} failed={totals['failed']}"
        + (f" aborted: {report.abort_reason}" if report.aborted else ""),
        file=sys.stderr,
    )
    return report.exit_code


def cmd_reencrypt(args: argparse.Namespace) -> int:
    if not args.all_namespaces and not args.namespace:
        raise ValueError("Specify --namespace or --all-namespaces")
    config = SealerConfig.from_env(
        concurrency=args.concurrency,
        rate_limit=args.rate,
        rate_burst=args.burst,
    )
    return asyncio.run(run_reencrypt(args, config))


# =============================================================================
# serve
# =============================================================================


def cmd_serve(args: argparse.Namespace) -> int:
    from .server import run_server
    config = SealerConfig.from_env(
        key_dir=args.key_dir,
        host=args.host,
        port=args.port,
    )
    run_server(config)
    return EXIT_OK


# =============================================================================
# Parser
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="navigator-sealed",
        description="Seal secrets with a rotating key and re-encrypt sealed objects.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("keygen", help="initialize the key directory or rotate the active key")
    p.add_argument("--key-dir", default=None)
    p.add_argument("--key-bits", type=int, default=None)
    p.add_argument("--rotate", action="store_true", help="generate a new active key")
    p.set_defaults(func=cmd_keygen)

    p = sub.add_parser("cert", help="print the active public key (PEM)")
    p.add_argument("--key-dir", default="keys")
    p.add_argument("-o", "--output", default=None)
    p.set_defaults(func=cmd_cert)

    p = sub.add_parser("prune", help="remove old keys no sealed object references")
    p.add_argument("--key-dir", default="keys")
    p.add_argument("--store", required=True, help="sealed object directory")
    p.add_argument("--older-than", type=int, default=90, help="age in days")
    p.set_defaults(func=cmd_prune)

    p = sub.add_parser("seal", help="seal a plain secret document")
    p.add_argument("-i", "--input", default=None, help="secret JSON (default: stdin)")
    p.add_argument("-o", "--output", default=None)
    p.add_argument("--store", default=None, help="create the sealed object in this directory")
    p.add_argument("--namespace", default=None)
    p.add_argument("--name", default=None)
    p.add_argument("--scope", choices=[s.value for s in SealingScope], default=SealingScope.STRICT.value)
    source = p.add_mutually_exclusive_group()
    source.add_argument("--key-dir", default="keys")
    source.add_argument("--cert", default=None, help="public key PEM file")
    source.add_argument("--cert-url", default=None, help="unseal service base URL")
    p.add_argument("--token", default=None)
    p.set_defaults(func=cmd_seal)

    p = sub.add_parser("reencrypt", help="re-encrypt sealed objects onto the active key")
    p.add_argument("--store", required=True, help="sealed object directory")
    scope = p.add_mutually_exclusive_group()
    scope.add_argument("-n", "--namespace", default=None)
    scope.add_argument("-A", "--all-namespaces", action="store_true")
    p.add_argument("--concurrency", type=int, default=None)
    p.add_argument("--rate", type=float, default=None, help="store requests per second")
    p.add_argument("--burst", type=int, default=None)
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--force", action="store_true", help="continue after unexpected errors")
    p.add_argument("--backup-dir", default=None)
    p.add_argument("--report", default=None, help="report destination ('-' for stdout)")
    p.add_argument("--timeout", type=float, default=None, help="overall run timeout (seconds)")
    p.add_argument("--key-dir", default="keys")
    p.add_argument("--unseal-url", default=None, help="remote unseal service base URL")
    p.add_argument("--token", default=None)
    p.add_argument("--client-cert", default=None)
    p.add_argument("--client-key", default=None)
    p.add_argument("--ca", default=None)
    p.set_defaults(func=cmd_reencrypt)

    p = sub.add_parser("serve", help="run the unseal service")
    p.add_argument("--key-dir", default=None)
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    try:
        return args.func(args)
    except (SealedError, ValueError, OSError) as err:
        logger.error("%s", err)
        return EXIT_ABORTED


if __name__ == "__main__":
    sys.exit(main())
