from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from common.envelope import unseal
from common.errors import ValidationError
from common.log import register_secret_values
from runner.keys import RunnerKeypair

FORBIDDEN_SECRET_KEYS = frozenset({"__proto__", "constructor", "prototype"})

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class SealedJobInput:
    job_id: str
    kind: str
    target_runner_id: str
    sealed_input_b64: str
    sealed_input_alg: str | None = None
    sealed_input_key_id: str | None = None

    def __repr__(self) -> str:
        return (
            f"SealedJobInput(job_id={self.job_id!r}, kind={self.kind!r}, "
            f"target_runner_id={self.target_runner_id!r}, sealed_input_key_id={self.sealed_input_key_id!r})"
        )


def build_aad(project_id: str, job_id: str, kind: str, target_runner_id: str) -> str:
    parts = {
        "project_id": project_id,
        "job_id": job_id,
        "kind": kind,
        "target_runner_id": target_runner_id,
    }
    cleaned = []
    for name, value in parts.items():
        text = str(value or "").strip()
        if not text:
            raise ValidationError(f"sealed input aad requires {name}")
        cleaned.append(text)
    return ":".join(cleaned)


def parse_secret_string_map(raw_json: str) -> dict[str, str]:
    try:
        parsed = json.loads(raw_json)
    except ValueError as exc:
        raise ValidationError("sealed input plaintext is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("sealed input plaintext must be an object")
    out: dict[str, str] = {}
    for key, value in parsed.items():
        name = key.strip()
        if not name:
            continue
        if name in FORBIDDEN_SECRET_KEYS:
            raise ValidationError(f"sealed input key forbidden: {name}")
        if not isinstance(value, str):
            raise ValidationError(f"sealed input field {name} must be string")
        out[name] = value
    return out


def unseal_job_secrets(keypair: RunnerKeypair, job: SealedJobInput, project_id: str) -> dict[str, str]:
    if not job.sealed_input_b64:
        raise ValidationError("sealed input missing for job")
    aad = build_aad(project_id, job.job_id, job.kind, job.target_runner_id)
    plaintext = unseal(
        keypair.private_key_pem,
        aad,
        job.sealed_input_b64,
        expected_alg=job.sealed_input_alg,
        expected_key_id=job.sealed_input_key_id,
    )
    secrets = parse_secret_string_map(plaintext)
    register_secret_values(secrets.values(), scope=job.job_id)
    _LOG.info("unsealed job input job_id=%s keys=%s", job.job_id, ",".join(sorted(secrets)))
    return secrets
