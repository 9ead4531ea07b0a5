from __future__ import annotations

import json
import time
from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from chatrelay.app import create_app
from chatrelay.media.adapter import INSUFFICIENT_BALANCE_MESSAGE

from conftest import make_settings


class VideoProviderStub:
    """Fake video endpoints; jobs stay in progress until ``finish`` is set."""

    def __init__(self, *, submit_response: httpx.Response | None = None) -> None:
        self.finish = False
        self.submitted: list[dict] = []
        self.status_checks = 0
        self._submit_response = submit_response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path.endswith("/video/submit"):
            self.submitted.append(body)
            return self._submit_response or httpx.Response(200, json={"requestId": "req-1"})
        if request.url.path.endswith("/video/status"):
            self.status_checks += 1
            if self.finish:
                return httpx.Response(
                    200,
                    json={
                        "status": "Succeed",
                        "results": {"videos": [{"url": "https://cdn.example/v.mp4"}]},
                    },
                )
            return httpx.Response(200, json={"status": "InProgress"})
        return httpx.Response(404)


def make_app(tmp_path, stub, **overrides):
    settings = make_settings(
        job_store_path=tmp_path / "jobs.json",
        chat_db=tmp_path / "chat.db",
        UPSTREAM_MAX_RETRIES=0,
        JOB_POLL_INTERVAL=0.01,
        JOB_MAX_ATTEMPTS=1000,
        **overrides,
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return create_app(settings, http_client=http_client)


def wait_for_state(client: TestClient, expected: str, *, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get("/api/media/jobs/media").json()
        if body["state"] == expected or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def test_job_blocks_chat_until_it_finishes(tmp_path) -> None:
    stub = VideoProviderStub()
    app = make_app(tmp_path, stub)

    with TestClient(app) as client:
        response = client.post(
            "/api/media/jobs",
            json={"prompt": "a cat surfing", "conversationId": "conv-m", "seed": 7},
        )
        assert response.status_code == 202
        body = response.json()
        assert body["state"] == "polling"
        assert body["job"]["requestId"] == "req-1"
        assert body["job"]["correlationId"] == "conv-m"
        assert stub.submitted[0]["prompt"] == "a cat surfing"
        assert stub.submitted[0]["seed"] == 7

        assert client.get("/api/chat/conv-m/state").json()["state"] == "polling"
        blocked = client.post(
            "/api/chat",
            json={"messages": [{"role": "user", "content": "hi"}], "conversationId": "conv-m"},
        )
        assert blocked.status_code == 409

        stub.finish = True
        finished = wait_for_state(client, "succeeded")
        state = client.get("/api/chat/conv-m/state").json()["state"]

    assert finished["result_url"] == "https://cdn.example/v.mp4"
    assert finished["job"] is None
    assert state == "idle"
    assert "req-1" not in (tmp_path / "jobs.json").read_text()


def test_cancel_releases_conversation(tmp_path) -> None:
    app = make_app(tmp_path, VideoProviderStub())

    with TestClient(app) as client:
        client.post("/api/media/jobs", json={"prompt": "x", "conversationId": "conv-c"})
        cancelled = client.delete("/api/media/jobs/media").json()
        state = client.get("/api/chat/conv-c/state").json()["state"]
        again = client.delete("/api/media/jobs/media").json()

    assert cancelled["cancelled"] is True
    assert cancelled["state"] == "cancelled"
    assert state == "idle"
    assert again["cancelled"] is False


def test_immediate_result_is_returned_without_polling(tmp_path) -> None:
    stub = VideoProviderStub(
        submit_response=httpx.Response(200, json={"video_url": "https://cdn.example/now.mp4"})
    )
    app = make_app(tmp_path, stub)

    with TestClient(app) as client:
        body = client.post(
            "/api/media/jobs", json={"prompt": "x", "conversationId": "conv-i"}
        ).json()
        state = client.get("/api/chat/conv-i/state").json()["state"]

    assert body["state"] == "succeeded"
    assert body["result_url"] == "https://cdn.example/now.mp4"
    assert stub.status_checks == 0
    assert state == "idle"


def test_balance_error_is_translated(tmp_path) -> None:
    stub = VideoProviderStub(
        submit_response=httpx.Response(
            403, json={"code": 30001, "message": "account balance is insufficient"}
        )
    )
    app = make_app(tmp_path, stub)

    with TestClient(app) as client:
        response = client.post("/api/media/jobs", json={"prompt": "x"})

    assert response.status_code == 403
    assert response.json()["detail"] == INSUFFICIENT_BALANCE_MESSAGE


def test_submit_rejected_while_chat_turn_in_flight(tmp_path) -> None:
    stub = VideoProviderStub()
    app = make_app(tmp_path, stub)

    with TestClient(app) as client:
        app.state.session_registry.acquire("conv-busy")
        response = client.post(
            "/api/media/jobs", json={"prompt": "x", "conversationId": "conv-busy"}
        )

    assert response.status_code == 409
    assert stub.submitted == []


def test_hidden_client_pauses_status_checks(tmp_path) -> None:
    stub = VideoProviderStub()
    app = make_app(tmp_path, stub)

    with TestClient(app) as client:
        hidden = client.post("/api/media/visibility", json={"hidden": True}).json()
        client.post("/api/media/jobs", json={"prompt": "x"})
        time.sleep(0.1)
        checks_while_hidden = stub.status_checks
        client.post("/api/media/visibility", json={"hidden": False})
        stub.finish = True
        finished = wait_for_state(client, "succeeded")

    assert hidden["hidden"] is True
    assert checks_while_hidden == 0
    assert finished["state"] == "succeeded"


def test_unknown_job_kind_is_404(tmp_path) -> None:
    app = make_app(tmp_path, VideoProviderStub())

    with TestClient(app) as client:
        assert client.get("/api/media/jobs/audio").status_code == 404
        assert client.delete("/api/media/jobs/audio").status_code == 404


def test_persisted_job_resumes_on_startup(tmp_path) -> None:
    (tmp_path / "jobs.json").write_text(
        json.dumps(
            {
                "jobs": {
                    "media": {
                        "requestId": "req-old",
                        "correlationId": "conv-r",
                        "attemptsMade": 4,
                        "createdAt": datetime.now(timezone.utc).isoformat(),
                        "kind": "media",
                    }
                }
            }
        )
    )
    stub = VideoProviderStub()
    stub.finish = True
    app = make_app(tmp_path, stub)

    with TestClient(app) as client:
        finished = wait_for_state(client, "succeeded")

    assert finished["result_url"] == "https://cdn.example/v.mp4"
    assert stub.status_checks == 1


@pytest.mark.parametrize("payload", [{}, {"prompt": ""}])
def test_prompt_is_required(tmp_path, payload) -> None:
    app = make_app(tmp_path, VideoProviderStub())

    with TestClient(app) as client:
        assert client.post("/api/media/jobs", json=payload).status_code == 422


class ImageProviderStub:
    """Fake prompt optimiser and image endpoint."""

    def __init__(self, image_response: httpx.Response | None = None) -> None:
        self.paths: list[str] = []
        self.bodies: list[dict] = []
        self._image_response = image_response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        body = json.loads(request.content)
        self.bodies.append(body)
        if request.url.path.endswith("/chat/completions"):
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "a red fox in snow"}}]}
            )
        if request.url.path.endswith("/images/generations"):
            return self._image_response or httpx.Response(
                200, json={"images": [{"url": "https://cdn.example/fox.png"}]}
            )
        return httpx.Response(404)


def test_image_generation_returns_url_with_optimised_prompt(tmp_path) -> None:
    stub = ImageProviderStub()
    app = make_app(tmp_path, stub)

    with TestClient(app) as client:
        response = client.post(
            "/api/media/images",
            json={
                "prompt": "a fox",
                "messages": [
                    {"role": "user", "content": "foxes in winter are my favourite"},
                    {"role": "user", "content": "draw a fox"},
                ],
                "batch_size": 2,
                "image2": "https://img.example/ref.png",
            },
        )
        job = client.get("/api/media/jobs/media").json()

    assert response.status_code == 200
    assert response.json() == {
        "imageUrl": "https://cdn.example/fox.png",
        "prompt": "a red fox in snow",
    }
    assert stub.paths[-1].endswith("/images/generations")
    sent = stub.bodies[-1]
    assert sent["prompt"] == "a red fox in snow"
    assert sent["batch_size"] == 2
    assert sent["image2"] == "https://img.example/ref.png"
    assert "image" not in sent
    assert "image" in stub.bodies[0]["messages"][0]["content"]
    assert job["state"] == "idle"


def test_image_generation_errors_are_reported(tmp_path) -> None:
    app = make_app(
        tmp_path,
        ImageProviderStub(httpx.Response(200, json={"data": []})),
    )

    with TestClient(app) as client:
        missing = client.post("/api/media/images", json={"prompt": "x"})
        empty = client.post("/api/media/images", json={"prompt": ""})

    assert missing.status_code == 502
    assert empty.status_code == 422
