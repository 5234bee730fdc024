from __future__ import annotations

import pytest

from runner.keys import RunnerKeypair, load_or_create


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session")
def keypair(tmp_path_factory: pytest.TempPathFactory) -> RunnerKeypair:
    # RSA-3072 generation is slow; share one key across the run.
    return load_or_create(tmp_path_factory.mktemp("keys") / "runner.pem")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
