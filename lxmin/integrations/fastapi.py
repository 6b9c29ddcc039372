# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin FastAPI Integration - REST service for backups and restores.

This module provides:
- The /1.0 REST endpoints with LXD-style sync/async/error envelopes
- Lifespan management (startup/shutdown)
- serve(), which runs the app under uvicorn with mutual TLS

Backups and restores are accepted synchronously (validation, name
reservation, pre-flight checks) and then run in the background. Their
outcome is observable only through status queries, notifications and logs.

Authentication is mutual TLS: uvicorn verifies client certificates against
the configured CA before a request ever reaches the application.
"""

import ssl
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from lxmin.backup.manager import BackupOptions, create_backup, run_backup
from lxmin.backup.restore import check_instance, run_restore
from lxmin.config import LxminConfig, _validate_endpoint
from lxmin.core import (
    LxminState,
    delete_backup,
    dispatch,
    get_backup_status,
    initialize_state,
    list_backups,
    shutdown_state,
)
from lxmin.errors import explain_invalid_notify_endpoint, explain_missing_notify_endpoint
from lxmin.exceptions import ConfigurationError, LxminError, ObjectNotFoundError, ValidationError
from lxmin.keys import Backup, validate_name
from lxmin.storage import parse_tags

logger = structlog.get_logger()

API_PREFIX = "/1.0"


def sync_response(metadata: Any = None) -> dict:
    """Envelope for a request that completed synchronously."""
    body: dict = {"status": "Success", "status_code": 200, "type": "sync"}
    if metadata is not None:
        body["metadata"] = metadata
    return body


def async_response(metadata: Any = None) -> JSONResponse:
    """Envelope for an accepted background operation."""
    body: dict = {"status": "Operation created", "status_code": 100, "type": "async"}
    if metadata is not None:
        body["metadata"] = metadata
    return JSONResponse(status_code=200, content=body)


def error_response(code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=code,
        content={"code": code, "error": message, "type": "error"},
    )


def install_exception_handlers(app: FastAPI) -> None:
    """Render lxmin errors and invalid requests as error envelopes."""

    @app.exception_handler(ObjectNotFoundError)
    async def handle_not_found(request: Request, exc: ObjectNotFoundError) -> JSONResponse:
        return error_response(404, exc.message)

    @app.exception_handler(LxminError)
    async def handle_lxmin_error(request: Request, exc: LxminError) -> JSONResponse:
        logger.warning(
            "request_rejected",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=exc.message,
        )
        return error_response(400, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return error_response(400, f"Invalid request: {problems}")


def _resolve_notify_endpoint(config: LxminConfig, requested: str | None) -> str:
    endpoint = requested or config.notify_endpoint
    if not endpoint:
        raise ConfigurationError(explain_missing_notify_endpoint())
    if not _validate_endpoint(endpoint):
        raise ValidationError(explain_invalid_notify_endpoint(endpoint))
    return endpoint


def register_lxmin_routes(
    app: FastAPI,
    config: LxminConfig,
    state: LxminState,
    prefix: str = "",
) -> None:
    """
    Register lxmin endpoints on a FastAPI app.

    Args:
        app: FastAPI application
        config: lxmin configuration
        state: Runtime state
        prefix: URL prefix in front of /1.0 (default: none)
    """
    base = f"{prefix}{API_PREFIX}"

    @app.get(f"{base}/health")
    async def health() -> Response:
        """Liveness probe."""
        return Response(status_code=200)

    @app.get(f"{base}/instances/{{name}}/backups")
    async def list_instance_backups(name: str) -> dict:
        """List backups of an instance, or of all instances when name is '*'."""
        backups = await list_backups(config, state, name)
        return sync_response([b.to_dict() for b in backups])

    @app.get(f"{base}/instances/{{name}}/backups/{{backup}}")
    async def backup_status(name: str, backup: str) -> dict:
        """Report whether a backup is generating, uploading or completed."""
        target = Backup(validate_name(name, "instance"), validate_name(backup, "backup"))
        return sync_response(await get_backup_status(config, state, target))

    @app.post(f"{base}/instances/{{name}}/backups")
    async def start_backup(
        request: Request,
        name: str,
        optimize: bool = False,
        tags: str | None = None,
        notify_endpoint: str | None = Query(None, alias="notifyEndpoint"),
        part_size: int | None = Query(None, alias="partSize"),
    ) -> JSONResponse:
        """
        Start a backup in the background.

        Args:
            name: Instance to back up
            optimize: Use the storage driver's optimized export format
            tags: Object tags as 'k=v&k2=v2'
            notifyEndpoint: Webhook for lifecycle events (defaults to config)
            partSize: Multipart part size in bytes
        """
        options = BackupOptions(
            optimized=optimize,
            tags=parse_tags(tags),
            part_size=part_size if part_size is not None else config.part_size,
            notify_endpoint=_resolve_notify_endpoint(config, notify_endpoint),
            raw_url=str(request.url),
        )
        backup = await create_backup(config, state, name, options)

        logger.info(
            "backup_accepted",
            instance=backup.instance,
            name=backup.name,
            operation_id=options.operation_id,
        )
        dispatch(state, run_backup(config, state, backup, options), options.operation_id)

        return async_response(
            {"name": backup.name, "optimized": options.optimized, "compressed": True}
        )

    @app.delete(f"{base}/instances/{{name}}/backups/{{backup}}")
    async def remove_backup(name: str, backup: str) -> dict:
        """Delete every object and object version of one backup."""
        target = Backup(validate_name(name, "instance"), validate_name(backup, "backup"))
        await delete_backup(config, state, target)
        return sync_response()

    @app.post(f"{base}/instances/{{name}}/backups/{{backup}}")
    async def start_restore(
        request: Request,
        name: str,
        backup: str,
        notify_endpoint: str | None = Query(None, alias="notifyEndpoint"),
    ) -> JSONResponse:
        """
        Start a restore in the background.

        Fails synchronously when an instance with this name already exists.
        """
        from ulid import ULID

        target = Backup(validate_name(name, "instance"), validate_name(backup, "backup"))
        endpoint = _resolve_notify_endpoint(config, notify_endpoint)

        await check_instance(state, target.instance)

        operation_id = str(ULID())
        logger.info(
            "restore_accepted",
            instance=target.instance,
            name=target.name,
            operation_id=operation_id,
        )
        dispatch(
            state,
            run_restore(
                config,
                state,
                target,
                notify_endpoint=endpoint,
                raw_url=str(request.url),
                operation_id=operation_id,
            ),
            operation_id,
        )

        return async_response()


@asynccontextmanager
async def lxmin_lifespan(app: FastAPI, config: LxminConfig):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: lxmin_lifespan(app, config))

    Args:
        app: FastAPI application
        config: lxmin configuration
    """
    logger.info("lxmin_lifespan_starting", endpoint=config.endpoint, bucket=config.bucket)

    state = await initialize_state(config)
    app.state.lxmin_state = state

    register_lxmin_routes(app, config, state)

    logger.info("lxmin_lifespan_started")

    try:
        yield
    finally:
        logger.info("lxmin_lifespan_stopping")
        await shutdown_state(state)
        logger.info("lxmin_lifespan_stopped")


def create_app(config: LxminConfig, state: LxminState | None = None) -> FastAPI:
    """
    Build the lxmin FastAPI application.

    Without a state, the lifespan creates one at startup. With a state,
    routes are registered immediately and the caller owns its shutdown.
    """
    if state is None:
        app = FastAPI(title="lxmin", lifespan=lambda app: lxmin_lifespan(app, config))
    else:
        app = FastAPI(title="lxmin")
        app.state.lxmin_state = state
        register_lxmin_routes(app, config, state)

    install_exception_handlers(app)
    return app


def create_app_from_env() -> FastAPI:
    """Application factory for `uvicorn --factory`."""
    from lxmin.env import create_config_from_env

    return create_app(create_config_from_env())


def _split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    return host or "0.0.0.0", int(port)


def serve(config: LxminConfig) -> None:
    """
    Run the REST service under uvicorn.

    With a CA file, clients must present a certificate signed by it;
    failed handshakes are rejected by the TLS layer.
    """
    import uvicorn

    host, port = _split_address(config.address)
    ssl_options: dict = {}
    if config.tls_enabled:
        ssl_options["ssl_certfile"] = str(config.cert_file)
        ssl_options["ssl_keyfile"] = str(config.key_file)
        if config.ca_file:
            ssl_options["ssl_ca_certs"] = str(config.ca_file)
            ssl_options["ssl_cert_reqs"] = ssl.CERT_REQUIRED

    logger.info(
        "lxmin_server_starting",
        host=host,
        port=port,
        tls=config.tls_enabled,
        client_auth=bool(config.ca_file),
    )
    uvicorn.run(create_app(config), host=host, port=port, **ssl_options)


def get_lxmin_state(app: FastAPI) -> LxminState:
    """
    Get lxmin state from a FastAPI app.

    Raises:
        RuntimeError: If lxmin is not initialized
    """
    state = getattr(app.state, "lxmin_state", None)
    if not state:
        raise RuntimeError("lxmin not initialized. Use create_app() or lxmin_lifespan.")
    return state

