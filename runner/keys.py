from __future__ import annotations

import argparse
import contextlib
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from common.crypto import (
    b64url_encode,
    generate_private_key,
    key_id_for_spki,
    load_private_key_pem,
    private_key_to_pem,
    pubkey_to_der,
)
from common.envelope import SEALED_INPUT_ALG

_LOG = logging.getLogger(__name__)

_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class RunnerKeypair:
    private_key_pem: str
    public_key_spki_b64: str
    key_id: str
    alg: str = SEALED_INPUT_ALG

    def advertisement(self) -> dict[str, str]:
        return {
            "alg": self.alg,
            "keyId": self.key_id,
            "publicKeySpkiB64": self.public_key_spki_b64,
        }

    def __repr__(self) -> str:
        return f"RunnerKeypair(key_id={self.key_id!r}, alg={self.alg!r})"


def sanitize_key_segment(value: str | None, fallback: str) -> str:
    safe = _UNSAFE_SEGMENT_RE.sub("_", str(value or "").strip())
    return safe or fallback


def resolve_key_path(runtime_dir: str | None, project_id: str, runner_name: str) -> Path:
    project_segment = sanitize_key_segment(project_id, "project")
    key_file = f"{sanitize_key_segment(runner_name, 'runner')}.pem"
    base = str(runtime_dir or "").strip()
    if base:
        return Path(base) / "keys" / "runner-input" / project_segment / key_file
    return Path.home() / ".clawlets" / "keys" / "runner-input" / project_segment / key_file


def _write_exclusive(path: Path, pem: str) -> None:
    # Readers only ever see a complete key: write aside, then link into place.
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="ascii") as f:
            f.write(pem)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o600)
        os.link(tmp_name, path)
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)


def load_or_create(path: str | Path) -> RunnerKeypair:
    key_path = Path(path).expanduser().resolve()
    key_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

    try:
        private_key_pem = key_path.read_text(encoding="ascii")
    except FileNotFoundError:
        private_key_pem = private_key_to_pem(generate_private_key())
        try:
            _write_exclusive(key_path, private_key_pem)
            _LOG.info("generated runner input key path=%s", key_path)
        except FileExistsError:
            # Another runner instance won the race; use its key.
            _LOG.info("runner input key created concurrently, reloading path=%s", key_path)
            private_key_pem = key_path.read_text(encoding="ascii")

    private_key = load_private_key_pem(private_key_pem)
    spki_der = pubkey_to_der(private_key.public_key())
    return RunnerKeypair(
        private_key_pem=private_key_pem,
        public_key_spki_b64=b64url_encode(spki_der),
        key_id=key_id_for_spki(spki_der),
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or load a runner sealed-input key and print its advertisement")
    parser.add_argument("path", help="private key path (created when missing)")
    args = parser.parse_args()
    keypair = load_or_create(args.path)
    print(json.dumps(keypair.advertisement(), indent=2))


if __name__ == "__main__":
    main()
