import pytest
from pydantic import ValidationError

from levelquiz.config import Settings


def test_assessment_policy_reads_from_environment(monkeypatch):
    monkeypatch.setenv("ASSESSMENT_POLICY", "fixed_total")
    assert Settings().assessment_policy == "fixed_total"


def test_unknown_assessment_policy_fails_at_load(monkeypatch):
    monkeypatch.setenv("ASSESSMENT_POLICY", "pooled_v2")
    with pytest.raises(ValidationError):
        Settings()
