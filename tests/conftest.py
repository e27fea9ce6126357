"""Shared fixtures: settings rooted in tmp_path and a fake Letta server."""

import json
import re

import httpx
import pytest

from subconscious.config import Settings
from subconscious.letta.client import LettaClient

AGENT_ID = "agent-a1b2c3d4-e5f6-7890-abcd-ef1234567890"
IMPORTED_AGENT_ID = "agent-eed2d657-289a-4842-b00f-d99dd9921ec7"

SAMPLE_MODELS = [
    {
        "model": "claude-sonnet-4-5",
        "name": "claude-sonnet-4-5",
        "provider_type": "anthropic",
        "handle": "anthropic/claude-sonnet-4-5",
    },
    {
        "model": "gemini-3-pro-preview",
        "name": "gemini-3-pro-preview",
        "provider_type": "google_ai",
        "handle": "google_ai/gemini-3-pro-preview",
    },
    {
        "model": "gemini-3-pro-preview",
        "name": "gemini-3-pro-preview",
        "provider_type": "google_ai",
        "handle": "gem1/gemini-3-pro-preview",
    },
    {"model": "gpt-5.2", "name": "gpt-5.2", "provider_type": "openai", "handle": "openai/gpt-5.2"},
]


class FakeLetta:
    """In-memory stand-in for the parts of the Letta API the hooks call."""

    def __init__(self):
        self.models = list(SAMPLE_MODELS)
        self.agents = {
            AGENT_ID: {
                "id": AGENT_ID,
                "name": "Subconscious",
                "description": "Watches your sessions",
                "blocks": [
                    {"label": "human", "description": "About the user", "value": "Prefers tests"},
                    {"label": "guidance", "description": "Advice", "value": "Run the linter"},
                ],
                "llm_config": {
                    "model": "claude-sonnet-4-5",
                    "handle": "anthropic/claude-sonnet-4-5",
                    "provider_name": "anthropic",
                    "context_window": 32000,
                    "temperature": 0.7,
                },
            }
        }
        self.messages = {AGENT_ID: []}
        self.conversations = {}
        self.sent = []  # (conversation_id, body)
        self.requests = []
        self.busy = set()
        self.fail_status = {}  # (method, path) -> status
        self.import_name = "Subconscious"

    # Helpers for tests

    def add_message(self, agent_id, text, message_type="assistant_message", date=None):
        self.messages.setdefault(agent_id, []).append(
            {
                "id": f"message-{len(self.messages[agent_id])}",
                "message_type": message_type,
                "content": text,
                "date": date or "2026-01-01T00:00:00Z",
            }
        )

    def calls(self, method, path_pattern):
        return [
            r
            for r in self.requests
            if r.method == method and re.fullmatch(path_pattern, r.url.path)
        ]

    # Request routing

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path

        status = self.fail_status.get((method, path))
        if status is not None:
            return httpx.Response(status, text="injected failure")

        if method == "GET" and path == "/v1/models/":
            return httpx.Response(200, json=self.models)

        if method == "POST" and path == "/v1/conversations":
            agent_id = request.url.params.get("agent_id")
            if agent_id not in self.agents:
                return httpx.Response(404, text="agent not found")
            conversation_id = f"conv-{len(self.conversations) + 1}"
            self.conversations[conversation_id] = agent_id
            return httpx.Response(200, json={"id": conversation_id, "agent_id": agent_id})

        match = re.fullmatch(r"/v1/conversations/([^/]+)/messages", path)
        if method == "POST" and match:
            conversation_id = match.group(1)
            if conversation_id not in self.conversations:
                return httpx.Response(404, text="conversation not found")
            if conversation_id in self.busy:
                return httpx.Response(409, text="conversation busy")
            body = json.loads(request.content)
            self.sent.append((conversation_id, body))
            return httpx.Response(
                200, content=b'data: {"message_type": "reasoning_message"}\n\n'
            )

        if method == "POST" and path == "/v1/agents/import":
            self.agents[IMPORTED_AGENT_ID] = {
                "id": IMPORTED_AGENT_ID,
                "name": f"{self.import_name}_copy",
                "blocks": [],
                "llm_config": {"model": "gpt-5.2", "handle": "openai/gpt-5.2"},
            }
            return httpx.Response(200, json={"agent_ids": [IMPORTED_AGENT_ID]})

        match = re.fullmatch(r"/v1/agents/([^/]+)/messages", path)
        if method == "GET" and match:
            agent_id = match.group(1)
            limit = int(request.url.params.get("limit", 10))
            return httpx.Response(200, json=self.messages.get(agent_id, [])[-limit:])

        match = re.fullmatch(r"/v1/agents/([^/]+)", path)
        if match:
            agent = self.agents.get(match.group(1))
            if agent is None:
                return httpx.Response(404, text="agent not found")
            if method == "GET":
                data = dict(agent)
                if request.url.params.get("include") != "agent.blocks":
                    data.pop("blocks", None)
                return httpx.Response(200, json=data)
            if method == "PATCH":
                agent.update(json.loads(request.content))
                return httpx.Response(200, json=agent)

        return httpx.Response(404, text=f"no route for {method} {path}")


@pytest.fixture
def fake_letta():
    return FakeLetta()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_key="test-key",
        home_dir=tmp_path / "home",
        temp_dir=tmp_path / "tmp",
        agent_file=tmp_path / "Subconscious.af",
    )


@pytest.fixture
def client_factory(fake_letta):
    """Drop-in replacement for ``LettaClient.from_settings``."""

    def factory(settings, timeout=30.0):
        return LettaClient(
            settings.api_base,
            settings.require_api_key(),
            timeout=timeout,
            transport=httpx.MockTransport(fake_letta),
        )

    return factory


@pytest.fixture
def letta_client(client_factory, settings):
    client = client_factory(settings)
    yield client
    client.close()


@pytest.fixture
def project_dir(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path
