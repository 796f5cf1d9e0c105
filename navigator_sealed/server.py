"""
Unseal Service HTTP interface (aiohttp).

Routes:
    GET  /healthz          liveness, unauthenticated
    GET  /v1/cert.pem      active public key (PEM), ETag = key fingerprint
    POST /v1/unseal        {envelope, namespace, name, scope} -> {plaintext}
    POST /v1/verify        same body -> {valid}
    POST /v1/rotate        same body -> {envelope, fingerprint}

Callers of the POST routes are identified by the CN of a verified TLS client
certificate, or by a bearer token mapped to an identity in the configuration.

Security Note:
    Never log plaintext or key material. The unseal route must only be
    reachable from inside the trust boundary.
"""
import hmac
import ssl
import asyncio
import logging
from collections.abc import Mapping
from typing import Optional

import orjson
from aiohttp import web

from .boundary.messages import (
    encode_plaintext,
    error_body,
    parse_unseal_request,
)
from .boundary.policy import AccessPolicy
from .boundary.service import UnsealService
from .crypto.config import SealerConfig
from .crypto.registry import KeyRegistry
from .exceptions import CryptoError, ForbiddenError, SealedError

logger = logging.getLogger("navigator.sealed")

REGISTRY = web.AppKey("registry", KeyRegistry)
SERVICE = web.AppKey("unseal_service", UnsealService)
CONFIG = web.AppKey("config", SealerConfig)
RENEWAL_TASK = web.AppKey("renewal_task", asyncio.Task)

IDENTITY = "navigator_sealed.identity"
PUBLIC_ROUTES = frozenset({"/healthz", "/v1/cert.pem"})


def _dumps(obj) -> str:
    return orjson.dumps(obj).decode("utf-8")


def json_error(status: int, category: str, message: str) -> web.Response:
    return web.json_response(
        error_body(category, message), status=status, dumps=_dumps,
    )


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def peer_common_name(request: web.Request) -> Optional[str]:
    """CN of the verified TLS client certificate, if any."""
    transport = request.transport
    if transport is None:
        return None
    peercert = transport.get_extra_info("peercert")
    if not peercert:
        return None
    for rdn in peercert.get("subject", ()):
        for key, value in rdn:
            if key == "commonName":
                return value
    return None


def token_identity(request: web.Request, tokens: Mapping[str, str]) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, presented = header.partition(" ")
    if scheme.lower() != "bearer" or not presented:
        return None
    found = None
    for token, identity in tokens.items():
        # compare every token to keep timing independent of position
        if hmac.compare_digest(token.encode("utf-8"), presented.strip().encode("utf-8")):
            found = identity
    return found


@web.middleware
async def auth_middleware(request: web.Request, handler):
    if request.path in PUBLIC_ROUTES:
        return await handler(request)
    config = request.app[CONFIG]
    identity = peer_common_name(request) or token_identity(request, config.tokens)
    if not identity:
        logger.warning("Unauthenticated request to %s from %s", request.path, request.remote)
        return json_error(401, "Unauthorized", "client identity required")
    request[IDENTITY] = identity
    return await handler(request)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def healthz(request: web.Request) -> web.Response:
    registry = request.app[REGISTRY]
    return web.json_response(
        {"status": "ok", "keys": len(registry)}, dumps=_dumps,
    )


async def certificate(request: web.Request) -> web.Response:
    """Active public key; clients revalidate with If-None-Match."""
    active = request.app[REGISTRY].active()
    etag = f'"{active.id}"'
    headers = {"ETag": etag, "Cache-Control": "no-cache"}
    if request.headers.get("If-None-Match") == etag:
        return web.Response(status=304, headers=headers)
    return web.Response(
        body=active.public_pem,
        content_type="application/x-pem-file",
        headers=headers,
    )


async def _parse(request: web.Request):
    try:
        body = orjson.loads(await request.read())
    except orjson.JSONDecodeError as err:
        raise ValueError(f"Invalid JSON: {err}") from err
    return parse_unseal_request(body)


def _failure(err: Exception) -> web.Response:
    if isinstance(err, ForbiddenError):
        return json_error(403, err.category, str(err))
    if isinstance(err, CryptoError):
        return json_error(422, err.category, str(err))
    if isinstance(err, SealedError):
        return json_error(500, err.category, str(err))
    return json_error(400, "BadRequest", str(err))


async def unseal(request: web.Request) -> web.Response:
    service = request.app[SERVICE]
    try:
        envelope, claim = await _parse(request)
        plaintext = await asyncio.to_thread(
            service.unseal, envelope, claim, request[IDENTITY],
        )
    except (SealedError, ValueError) as err:
        return _failure(err)
    try:
        return web.json_response(encode_plaintext(plaintext), dumps=_dumps)
    finally:
        del plaintext


async def verify(request: web.Request) -> web.Response:
    service = request.app[SERVICE]
    try:
        envelope, claim = await _parse(request)
        valid = await asyncio.to_thread(
            service.verify, envelope, claim, request[IDENTITY],
        )
    except (SealedError, ValueError) as err:
        return _failure(err)
    return web.json_response({"valid": valid}, dumps=_dumps)


async def rotate(request: web.Request) -> web.Response:
    service = request.app[SERVICE]
    try:
        envelope, claim = await _parse(request)
        rotated = await asyncio.to_thread(
            service.rotate, envelope, claim, request[IDENTITY],
        )
    except (SealedError, ValueError) as err:
        return _failure(err)
    return web.json_response(
        {"envelope": rotated.to_text(), "fingerprint": rotated.key_fingerprint},
        dumps=_dumps,
    )


# ---------------------------------------------------------------------------
# Key renewal
# ---------------------------------------------------------------------------

async def renew_keys(registry: KeyRegistry, config: SealerConfig) -> None:
    """Generate a new active key every ``key_renew_period`` seconds."""
    period = config.renew_period
    if period is None:
        return
    interval = min(period.total_seconds(), 60.0)
    while True:
        if registry.needs_rotation(period=period):
            pair = await asyncio.to_thread(registry.generate)
            logger.info("Renewed sealing key; active key is now %s", pair.id)
        await asyncio.sleep(interval)


async def _start_renewal(app: web.Application) -> None:
    app[RENEWAL_TASK] = asyncio.create_task(renew_keys(app[REGISTRY], app[CONFIG]))


async def _stop_renewal(app: web.Application) -> None:
    task = app.get(RENEWAL_TASK)
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def create_app(
    registry: KeyRegistry,
    config: Optional[SealerConfig] = None,
    policy: Optional[AccessPolicy] = None,
) -> web.Application:
    """Build the unseal service application around an initialized registry."""
    config = config or SealerConfig()
    policy = policy or AccessPolicy(config.access_policy)
    app = web.Application(middlewares=[auth_middleware])
    app[REGISTRY] = registry
    app[CONFIG] = config
    app[SERVICE] = UnsealService(registry, policy)
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/v1/cert.pem", certificate)
    app.router.add_post("/v1/unseal", unseal)
    app.router.add_post("/v1/verify", verify)
    app.router.add_post("/v1/rotate", rotate)
    if config.renew_period is not None:
        app.on_startup.append(_start_renewal)
        app.on_cleanup.append(_stop_renewal)
    return app


def server_ssl_context(config: SealerConfig) -> Optional[ssl.SSLContext]:
    """TLS context; client certificates are required when a CA is configured."""
    if not config.tls_cert:
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(config.tls_cert, config.tls_key)
    if config.tls_client_ca:
        context.load_verify_locations(cafile=config.tls_client_ca)
        context.verify_mode = ssl.CERT_REQUIRED
    return context


def run_server(config: SealerConfig) -> None:
    registry = config.registry().initialize()
    app = create_app(registry, config)
    logger.info(
        "Serving unseal service on %s:%d (active key %s)",
        config.host, config.port, registry.active().id,
    )
    web.run_app(
        app,
        host=config.host,
        port=config.port,
        ssl_context=server_ssl_context(config),
        print=None,
    )
