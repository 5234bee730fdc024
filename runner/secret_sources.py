from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING, Any, Protocol, TextIO

from common.errors import ValidationError
from common.log import register_secret_values

if TYPE_CHECKING:
    from runner.secrets_buffer import LocalSecretsBuffer

POLL_INTERVAL_SECONDS = 0.25
PROMPT_TEXT = "Runner fallback: paste JSON secrets payload and press Enter:\n"
MISSING_MESSAGE = "secrets input missing; submit via localhost endpoint or rerun with interactive tty"

_LOG = logging.getLogger(__name__)


class SecretsInputMissingError(TimeoutError):
    pass


class SecretsPayloadError(ValidationError):
    pass


class SecretSource(Protocol):
    async def fetch(self, job_id: str) -> dict[str, str] | None: ...


def coerce_secret_map(raw: dict[str, Any]) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in raw.items():
        name = str(key).strip()
        if not name or not isinstance(value, str):
            continue
        out[name] = value
    return out


class BufferSource:
    def __init__(self, buffer: "LocalSecretsBuffer"):
        self.buffer = buffer

    async def fetch(self, job_id: str) -> dict[str, str] | None:
        return self.buffer.take(job_id)


class InteractivePromptSource:
    def __init__(self, stream: TextIO | None = None, output: TextIO | None = None):
        self.stream = stream if stream is not None else sys.stdin
        self.output = output if output is not None else sys.stdout
        self.logger = logging.getLogger("runner.secret_sources")

    async def fetch(self, job_id: str) -> dict[str, str] | None:
        self.output.write(PROMPT_TEXT)
        self.output.flush()
        line = await asyncio.to_thread(self.stream.readline)
        try:
            parsed = json.loads(line)
        except ValueError as exc:
            raise SecretsPayloadError("invalid JSON payload") from exc
        if not isinstance(parsed, dict):
            raise SecretsPayloadError("invalid JSON payload")
        secrets = coerce_secret_map(parsed)
        register_secret_values(secrets.values(), scope=job_id)
        self.logger.info("secrets read from interactive prompt job_id=%s count=%s", job_id, len(secrets))
        return secrets


async def wait_or_prompt(
    buffer: "LocalSecretsBuffer",
    job_id: str,
    timeout: float,
    allow_prompt: bool,
    prompt: SecretSource | None = None,
    poll_interval: float = POLL_INTERVAL_SECONDS,
) -> dict[str, str]:
    source = BufferSource(buffer)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, float(timeout))
    while loop.time() < deadline:
        found = await source.fetch(job_id)
        if found is not None:
            return found
        await asyncio.sleep(min(poll_interval, max(0.0, deadline - loop.time())))
    found = await source.fetch(job_id)
    if found is not None:
        return found

    if not allow_prompt:
        raise SecretsInputMissingError(MISSING_MESSAGE)
    _LOG.warning("no secrets submitted for job_id=%s within %.1fs, falling back to prompt", job_id, timeout)
    fallback = prompt if prompt is not None else InteractivePromptSource()
    secrets = await fallback.fetch(job_id)
    if secrets is None:
        raise SecretsInputMissingError(MISSING_MESSAGE)
    return secrets
