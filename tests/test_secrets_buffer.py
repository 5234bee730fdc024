from __future__ import annotations

import asyncio
import io
import json

import aiohttp
import pytest

from runner.secret_sources import (
    InteractivePromptSource,
    SecretsInputMissingError,
    SecretsPayloadError,
)
from runner.secrets_buffer import LocalSecretsBuffer, StoredSecrets

ORIGIN = "https://app.example.test"
NONCE = "n0nce-value"


def _headers(origin: str = ORIGIN, nonce: str = NONCE) -> dict[str, str]:
    return {"Origin": origin, "X-Clawlets-Nonce": nonce, "Content-Type": "application/json"}


def test_ttl_is_clamped_and_reap_interval_bounded():
    assert LocalSecretsBuffer(ttl=1).ttl == 10.0
    assert LocalSecretsBuffer(ttl=1).reap_interval == 2.5
    assert LocalSecretsBuffer(ttl=4).reap_interval == 2.5
    assert LocalSecretsBuffer(ttl=60).reap_interval == 15.0
    assert LocalSecretsBuffer(ttl=3600).reap_interval == 30.0


def test_take_is_single_use(clock):
    buf = LocalSecretsBuffer(ttl=60, clock=clock)
    buf.put("j1", {"K": "v"})
    assert buf.take("j1") == {"K": "v"}
    assert buf.take("j1") is None


def test_take_after_ttl_returns_none(clock):
    buf = LocalSecretsBuffer(ttl=60, clock=clock)
    buf.put("j1", {"K": "v"})
    clock.advance(60)
    assert buf.take("j1") is None
    assert "j1" not in buf.store


def test_last_submission_wins_and_refreshes_expiry(clock):
    buf = LocalSecretsBuffer(ttl=60, clock=clock)
    buf.put("j1", {"A": "1"})
    clock.advance(50)
    buf.put("j1", {"B": "2"})
    clock.advance(50)
    assert buf.take("j1") == {"B": "2"}


def test_purge_expired_only_drops_stale_entries(clock):
    store: dict[str, StoredSecrets] = {}
    buf = LocalSecretsBuffer(ttl=30, store=store, clock=clock)
    buf.put("old", {"A": "1"})
    clock.advance(20)
    buf.put("new", {"B": "2"})
    clock.advance(10)
    buf.purge_expired()
    assert list(store) == ["new"]


def test_independent_buffers_do_not_share_state(clock):
    first = LocalSecretsBuffer(clock=clock)
    second = LocalSecretsBuffer(clock=clock)
    first.put("j1", {"A": "1"})
    assert second.take("j1") is None
    assert first.take("j1") == {"A": "1"}


def test_stored_secrets_repr_hides_values():
    row = StoredSecrets(secrets={"TOKEN": "super-secret"}, expires_at=1.0)
    assert "super-secret" not in repr(row)


@pytest.mark.asyncio
async def test_reaper_drops_untaken_entries(clock):
    buf = LocalSecretsBuffer(ttl=30, clock=clock)
    buf.reap_interval = 0.05
    await buf.start(port=0, nonce=NONCE, allowed_origin=ORIGIN)
    try:
        buf.put("j1", {"K": "never-taken"})
        await asyncio.sleep(0.2)
        assert "j1" in buf.store
        clock.advance(31)
        await asyncio.sleep(0.3)
        assert buf.store == {}
    finally:
        await buf.stop()


@pytest.mark.asyncio
async def test_start_requires_nonce_and_origin():
    buf = LocalSecretsBuffer()
    with pytest.raises(ValueError):
        await buf.start(port=0, nonce=" ", allowed_origin=ORIGIN)
    with pytest.raises(ValueError):
        await buf.start(port=0, nonce=NONCE, allowed_origin="")
    assert buf.runner is None


@pytest.mark.asyncio
async def test_http_submit_then_take():
    buf = LocalSecretsBuffer()
    await buf.start(port=0, nonce=NONCE, allowed_origin=ORIGIN)
    try:
        url = f"http://127.0.0.1:{buf.port}/secrets/submit"
        body = {"jobId": "j1", "secrets": {"API_KEY": "abc", "N": 5, " ": "x", "  SPACED ": "y"}}
        async with aiohttp.ClientSession() as session:
            async with session.post(url, data=json.dumps(body), headers=_headers()) as resp:
                assert resp.status == 200
                assert resp.headers["Access-Control-Allow-Origin"] == ORIGIN
                assert resp.headers["Cache-Control"] == "no-store"
                assert await resp.json() == {"ok": True, "accepted": 2}
        assert buf.take("j1") == {"API_KEY": "abc", "SPACED": "y"}
        assert buf.take("j1") is None
    finally:
        await buf.stop()


@pytest.mark.asyncio
async def test_http_rejections_do_not_touch_storage():
    buf = LocalSecretsBuffer()
    await buf.start(port=0, nonce=NONCE, allowed_origin=ORIGIN)
    base = f"http://127.0.0.1:{buf.port}"
    body = json.dumps({"jobId": "j1", "secrets": {"K": "v"}})
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{base}/secrets/submit", data=body, headers=_headers(nonce="wrong")) as resp:
                assert resp.status == 403
                assert await resp.json() == {"error": "nonce mismatch"}

            async with session.post(
                f"{base}/secrets/submit", data=body, headers=_headers(origin="https://evil.test")
            ) as resp:
                assert resp.status == 403
                assert await resp.json() == {"error": "origin forbidden"}

            no_origin = {"X-Clawlets-Nonce": NONCE}
            async with session.post(f"{base}/secrets/submit", data=body, headers=no_origin) as resp:
                assert resp.status == 403
                assert await resp.json() == {"error": "origin forbidden"}

            async with session.post(f"{base}/secrets/submit", data="{nope", headers=_headers()) as resp:
                assert resp.status == 400
                assert await resp.json() == {"error": "invalid json body"}

            async with session.post(f"{base}/secrets/submit", data="[1, 2]", headers=_headers()) as resp:
                assert resp.status == 400
                assert await resp.json() == {"error": "invalid json body"}

            for bad in ({"secrets": {"K": "v"}}, {"jobId": "  ", "secrets": {}}, {"jobId": "j1", "secrets": []}):
                async with session.post(f"{base}/secrets/submit", data=json.dumps(bad), headers=_headers()) as resp:
                    assert resp.status == 400
                    assert await resp.json() == {"error": "jobId and secrets required"}

            async with session.get(f"{base}/secrets/submit", headers=_headers()) as resp:
                assert resp.status == 404
                assert await resp.json() == {"error": "not found"}

            async with session.post(f"{base}/other", data=body, headers=_headers()) as resp:
                assert resp.status == 404
                assert await resp.json() == {"error": "not found"}
        assert buf.store == {}
    finally:
        await buf.stop()


@pytest.mark.asyncio
async def test_http_options_preflight():
    buf = LocalSecretsBuffer()
    await buf.start(port=0, nonce=NONCE, allowed_origin=ORIGIN)
    try:
        async with aiohttp.ClientSession() as session:
            async with session.options(f"http://127.0.0.1:{buf.port}/secrets/submit") as resp:
                assert resp.status == 204
                assert resp.headers["Access-Control-Allow-Origin"] == ORIGIN
                assert resp.headers["Access-Control-Allow-Methods"] == "POST,OPTIONS"
                assert resp.headers["Access-Control-Allow-Headers"] == "content-type,x-clawlets-nonce"
    finally:
        await buf.stop()


@pytest.mark.asyncio
async def test_http_body_over_limit():
    buf = LocalSecretsBuffer(max_body_bytes=1024)
    await buf.start(port=0, nonce=NONCE, allowed_origin=ORIGIN)
    try:
        body = json.dumps({"jobId": "j1", "secrets": {"K": "v" * 4096}})
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"http://127.0.0.1:{buf.port}/secrets/submit", data=body, headers=_headers()
            ) as resp:
                assert resp.status == 413
        assert buf.store == {}
    finally:
        await buf.stop()


@pytest.mark.asyncio
async def test_internal_error_returns_generic_shape(monkeypatch):
    buf = LocalSecretsBuffer()
    await buf.start(port=0, nonce=NONCE, allowed_origin=ORIGIN)

    def _boom(job_id, secrets):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(buf, "put", _boom)
    try:
        body = json.dumps({"jobId": "j1", "secrets": {"K": "v"}})
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"http://127.0.0.1:{buf.port}/secrets/submit", data=body, headers=_headers()
            ) as resp:
                assert resp.status == 500
                assert await resp.json() == {"error": "internal error", "detail": "store unavailable"}
    finally:
        await buf.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_releases_port():
    buf = LocalSecretsBuffer()
    await buf.start(port=0, nonce=NONCE, allowed_origin=ORIGIN)
    port = buf.port
    await buf.stop()
    await buf.stop()
    assert buf.runner is None
    with pytest.raises(aiohttp.ClientConnectionError):
        async with aiohttp.ClientSession() as session:
            await session.post(f"http://127.0.0.1:{port}/secrets/submit", data="{}")


@pytest.mark.asyncio
async def test_wait_or_prompt_returns_submitted_secrets():
    buf = LocalSecretsBuffer()
    asyncio.get_running_loop().call_later(0.3, buf.put, "j1", {"K": "v"})
    assert await buf.wait_or_prompt("j1", timeout=5, allow_prompt=False) == {"K": "v"}


@pytest.mark.asyncio
async def test_wait_or_prompt_times_out_without_prompt():
    buf = LocalSecretsBuffer()
    with pytest.raises(SecretsInputMissingError, match="submit via localhost endpoint"):
        await buf.wait_or_prompt("j1", timeout=0.3, allow_prompt=False)


@pytest.mark.asyncio
async def test_wait_or_prompt_falls_back_to_prompt():
    buf = LocalSecretsBuffer()
    output = io.StringIO()
    prompt = InteractivePromptSource(stream=io.StringIO('{"A": "b", "n": 1, " ": "z"}\n'), output=output)
    secrets = await buf.wait_or_prompt("j1", timeout=0.1, allow_prompt=True, prompt=prompt)
    assert secrets == {"A": "b"}
    assert "paste JSON secrets payload" in output.getvalue()


@pytest.mark.asyncio
async def test_prompt_rejects_non_object():
    prompt = InteractivePromptSource(stream=io.StringIO("[1]\n"), output=io.StringIO())
    with pytest.raises(SecretsPayloadError):
        await prompt.fetch("j1")
