from __future__ import annotations

import asyncio
import contextlib
import hmac
import json
import logging
import time
from collections.abc import Callable, MutableMapping
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from common.config import DEFAULT_LOCAL_SECRETS_MAX_BODY, DEFAULT_LOCAL_SECRETS_TTL
from common.log import register_secret_values
from runner.secret_sources import SecretSource, coerce_secret_map, wait_or_prompt

BIND_HOST = "127.0.0.1"
SUBMIT_PATH = "/secrets/submit"
NONCE_HEADER = "X-Clawlets-Nonce"
MIN_TTL_SECONDS = 10.0
MIN_REAP_INTERVAL = 2.0
MAX_REAP_INTERVAL = 30.0

SecretMap = dict[str, str]


@dataclass
class StoredSecrets:
    secrets: SecretMap
    expires_at: float

    def __repr__(self) -> str:
        return f"StoredSecrets(keys={sorted(self.secrets)!r}, expires_at={self.expires_at!r})"


def _json(status: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> web.Response:
    resp = web.Response(
        status=status,
        text=json.dumps(body, separators=(",", ":")),
        content_type="application/json",
        charset="utf-8",
    )
    resp.headers["Cache-Control"] = "no-store"
    for key, value in (headers or {}).items():
        resp.headers[key] = value
    return resp


class LocalSecretsBuffer:
    def __init__(
        self,
        ttl: float = DEFAULT_LOCAL_SECRETS_TTL,
        store: MutableMapping[str, StoredSecrets] | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_body_bytes: int = DEFAULT_LOCAL_SECRETS_MAX_BODY,
    ):
        self.logger = logging.getLogger("runner.secrets_buffer")
        self.ttl = max(MIN_TTL_SECONDS, float(ttl))
        self.reap_interval = min(MAX_REAP_INTERVAL, max(MIN_REAP_INTERVAL, self.ttl / 4))
        self.store: MutableMapping[str, StoredSecrets] = store if store is not None else {}
        self.clock = clock
        self.max_body_bytes = int(max_body_bytes)
        self.nonce = ""
        self.allowed_origin = ""
        self.port: int | None = None
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self._reaper_task: asyncio.Task[Any] | None = None

    def _build_app(self) -> web.Application:
        app = web.Application(client_max_size=self.max_body_bytes)
        # Single catch-all so the check order is fixed regardless of method/path.
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app

    async def start(self, port: int, nonce: str, allowed_origin: str) -> None:
        if self.runner is not None:
            return
        nonce = str(nonce or "").strip()
        allowed_origin = str(allowed_origin or "").strip()
        if not nonce:
            raise ValueError("local secrets nonce required")
        if not allowed_origin:
            raise ValueError("local secrets allowed_origin required")
        self.nonce = nonce
        self.allowed_origin = allowed_origin

        runner = web.AppRunner(self._build_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, BIND_HOST, int(port))
        try:
            await site.start()
        except BaseException:
            await runner.cleanup()
            raise
        self.runner = runner
        self.site = site
        self.port = self._bound_port(runner, int(port))
        self._reaper_task = asyncio.create_task(self._reaper_loop(), name="local-secrets-reaper")
        self.logger.info("local secrets endpoint listening on http://%s:%s%s", BIND_HOST, self.port, SUBMIT_PATH)

    @staticmethod
    def _bound_port(runner: web.AppRunner, requested: int) -> int:
        for address in runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return requested

    async def stop(self) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper_task
            self._reaper_task = None
        if self.runner is None:
            return
        runner = self.runner
        self.runner = None
        self.site = None
        await runner.cleanup()
        self.logger.info("local secrets endpoint stopped")

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            self.purge_expired()

    def purge_expired(self, now: float | None = None) -> None:
        current = self.clock() if now is None else now
        expired = [job_id for job_id, row in self.store.items() if row.expires_at <= current]
        for job_id in expired:
            self.store.pop(job_id, None)
        if expired:
            self.logger.debug("purged expired secret entries count=%s", len(expired))

    def put(self, job_id: str, secrets: SecretMap) -> None:
        self.store[job_id] = StoredSecrets(secrets=dict(secrets), expires_at=self.clock() + self.ttl)

    def take(self, job_id: str) -> SecretMap | None:
        self.purge_expired()
        row = self.store.pop(job_id, None)
        if row is None:
            return None
        if row.expires_at <= self.clock():
            return None
        register_secret_values(row.secrets.values(), scope=job_id)
        return row.secrets

    async def wait_or_prompt(
        self,
        job_id: str,
        timeout: float,
        allow_prompt: bool,
        prompt: SecretSource | None = None,
    ) -> SecretMap:
        return await wait_or_prompt(self, job_id, timeout, allow_prompt, prompt=prompt)

    def _cors_headers(self) -> dict[str, str]:
        return {"Access-Control-Allow-Origin": self.allowed_origin}

    async def handle(self, request: web.Request) -> web.Response:
        try:
            return await self._handle(request)
        except web.HTTPRequestEntityTooLarge:
            return _json(413, {"error": "body too large"})
        except Exception as exc:
            self.logger.exception("local secrets request failed")
            return _json(500, {"error": "internal error", "detail": str(exc)})

    async def _handle(self, request: web.Request) -> web.Response:
        if request.method == "OPTIONS":
            return web.Response(
                status=204,
                headers={
                    **self._cors_headers(),
                    "Access-Control-Allow-Methods": "POST,OPTIONS",
                    "Access-Control-Allow-Headers": "content-type,x-clawlets-nonce",
                    "Cache-Control": "no-store",
                },
            )

        if request.method != "POST" or request.path != SUBMIT_PATH:
            return _json(404, {"error": "not found"})

        origin = request.headers.get("Origin", "").strip()
        if origin != self.allowed_origin:
            self.logger.warning("local secrets submit rejected: origin forbidden origin=%r", origin)
            return _json(403, {"error": "origin forbidden"})

        header_nonce = request.headers.get(NONCE_HEADER, "").strip()
        if not hmac.compare_digest(header_nonce.encode("utf-8"), self.nonce.encode("utf-8")):
            self.logger.warning("local secrets submit rejected: nonce mismatch")
            return _json(403, {"error": "nonce mismatch"})

        raw = await request.read()
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            data = None
        if not isinstance(data, dict):
            return _json(400, {"error": "invalid json body"})

        job_id = data.get("jobId")
        job_id = job_id.strip() if isinstance(job_id, str) else ""
        secrets_raw = data.get("secrets")
        if not job_id or not isinstance(secrets_raw, dict):
            return _json(400, {"error": "jobId and secrets required"})

        secrets = coerce_secret_map(secrets_raw)
        self.put(job_id, secrets)
        self.logger.info("local secrets accepted job_id=%s count=%s", job_id, len(secrets))
        return _json(200, {"ok": True, "accepted": len(secrets)}, headers=self._cors_headers())
