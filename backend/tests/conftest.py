"""Shared fixtures: a temp SQLite store, a minimal config, a scripted LLM client."""

import json

import pytest

from nvdrs_ipv.config import build_config
from nvdrs_ipv.schemas import ModelInvocation, Narrative
from nvdrs_ipv.storage import IPVStorage

RECONCILIATION = {
    "source_weights": {"primary": 0.65, "secondary": 0.35},
    "base_floor": 0.5,
    "spread_weight": 0.4,
    "confidence_gap_threshold": 0.4,
}


def make_config(tmp_path, **sections):
    overrides = {
        "prompt": {
            "system_prompt": "Classify the narrative for intimate partner violence.",
            "user_template": "Narrative:\n{narrative}\nRespond with JSON.",
        },
        "reconciliation": RECONCILIATION,
        "storage": {"database_url": str(tmp_path / "ipv.db")},
        "llm": {"retry_base_delay_seconds": 0},
    }
    for name, values in sections.items():
        overrides.setdefault(name, {}).update(values)
    return build_config(overrides)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def storage(tmp_path):
    store = IPVStorage(str(tmp_path / "ipv.db"))
    yield store
    store.close()


class FakeClient:
    """Stands in for LLMClient; answers from a callable and counts calls."""

    def __init__(self, respond=None):
        self.calls = []
        self._respond = respond or (lambda user_prompt: json.dumps(
            {"detected": True, "confidence": 0.9, "rationale": "partner named as suspect"}
        ))

    def invoke(self, system_prompt, user_prompt, **kwargs):
        self.calls.append(user_prompt)
        reply = self._respond(user_prompt)
        if isinstance(reply, ModelInvocation):
            return reply
        return ModelInvocation(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            model="fake-model",
            temperature=0.1,
            response_raw=reply,
            attempts=1,
            latency_seconds=0.01,
            prompt_tokens=100,
            completion_tokens=20,
            total_tokens=120,
        )


@pytest.fixture
def fake_client():
    return FakeClient()


def make_narratives(n_cases, text="The victim was shot by her estranged husband after an argument."):
    narratives = []
    for i in range(n_cases):
        for narrative_type in ("primary", "secondary"):
            narratives.append(Narrative(
                case_id=f"case-{i:03d}",
                narrative_type=narrative_type,
                raw_text=text,
                row_num=i + 1,
            ))
    return narratives
