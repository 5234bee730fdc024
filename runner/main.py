from __future__ import annotations

import argparse
import asyncio
import json
import logging
import secrets
import signal
import sys
import time
from typing import Any

from common.config import load_runner_config
from common.log import redaction_filter, release_secret_values, setup_logging
from runner.keys import RunnerKeypair, load_or_create, resolve_key_path
from runner.secrets_buffer import LocalSecretsBuffer


class RunnerApp:
    def __init__(self, config: dict[str, Any]):
        self.logger = logging.getLogger("runner.main")
        self.config = config
        self.started_at = time.time()
        self.key_path = resolve_key_path(
            config.get("runtime_dir"),
            str(config["project_id"]),
            str(config["runner_name"]),
        )
        self.keypair: RunnerKeypair | None = None
        self.secrets_buffer: LocalSecretsBuffer | None = None
        self._shutdown = asyncio.Event()

    def load_keypair(self) -> RunnerKeypair:
        if self.keypair is None:
            self.keypair = load_or_create(self.key_path)
            self.logger.info(
                "runner input key ready alg=%s key_id=%s path=%s",
                self.keypair.alg,
                self.keypair.key_id,
                self.key_path,
            )
        return self.keypair

    def get_status(self) -> dict[str, Any]:
        return {
            "project_id": self.config["project_id"],
            "runner_name": self.config["runner_name"],
            "sealed_input": self.keypair.advertisement() if self.keypair else None,
            "local_secrets_port": self.secrets_buffer.port if self.secrets_buffer else None,
            "uptime": time.time() - self.started_at,
        }

    async def start_secrets_buffer(self) -> None:
        port = self.config.get("local_secrets_port")
        if port is None:
            return
        nonce = str(self.config.get("local_secrets_nonce") or "").strip()
        if not nonce:
            nonce = secrets.token_urlsafe(24)
            # printed, never logged
            print(f"local secrets nonce: {nonce}", file=sys.stderr)
        self.secrets_buffer = LocalSecretsBuffer(
            ttl=float(self.config["local_secrets_ttl"]),
            max_body_bytes=int(self.config["local_secrets_max_body"]),
        )
        await self.secrets_buffer.start(
            port=int(port),
            nonce=nonce,
            allowed_origin=str(self.config["local_secrets_allowed_origin"]),
        )

    def finish_job(self, job_id: str) -> None:
        release_secret_values(job_id)

    async def start(self) -> None:
        self.load_keypair()
        await self.start_secrets_buffer()
        self.logger.info("runner started status=%s", json.dumps(self.get_status()))
        await self._shutdown.wait()

    async def shutdown(self) -> None:
        if self.secrets_buffer is not None:
            await self.secrets_buffer.stop()
            self.secrets_buffer = None
        redaction_filter.clear()
        self._shutdown.set()


def _install_signal_handlers(app: RunnerApp) -> None:
    loop = asyncio.get_running_loop()

    async def _shutdown() -> None:
        await app.shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(_shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(_shutdown()))


async def _amain(config_path: str, print_key: bool = False) -> None:
    cfg = load_runner_config(config_path)
    setup_logging(cfg.get("log_level", "info"), cfg.get("log_file") or None)
    app = RunnerApp(cfg)
    if print_key:
        print(json.dumps(app.load_keypair().advertisement(), indent=2))
        return
    _install_signal_handlers(app)
    await app.start()


def main() -> None:
    parser = argparse.ArgumentParser(description="Fleet runner: sealed input key and local secrets endpoint")
    parser.add_argument("config", help="path to runner yaml config")
    parser.add_argument("--print-key", action="store_true", help="print the sealed-input key advertisement and exit")
    args = parser.parse_args()
    asyncio.run(_amain(args.config, print_key=args.print_key))


if __name__ == "__main__":
    main()
