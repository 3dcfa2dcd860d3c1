import json
from pathlib import Path

import pytest

from engine_config import EngineConfigError, EngineConfigRegistry, KEY_STAGES, load_engine_config


def test_default_config_covers_every_key_stage(engine_config):
    for subject in ("maths", "english", "science"):
        for stage in KEY_STAGES:
            assert engine_config.topic_ids(subject, stage), (subject, stage)
    assert engine_config.curriculum_size("maths", "KS2") == 9
    assert engine_config.topic_label("maths", "KS2", "fractions").startswith("Fractions")
    assert engine_config.topic_label("maths", "KS2", "not-a-topic") == "not-a-topic"


def test_mastery_threshold_resolution_order(engine_config):
    # Topic override beats the subject default.
    assert engine_config.mastery_threshold("maths", "KS3", "algebra") == 75.0
    assert engine_config.mastery_threshold("maths", "KS2", "fractions") == 80.0
    assert engine_config.mastery_threshold("science", "KS2", "plants") == 75.0
    # Unknown subject falls back to the global default.
    assert engine_config.mastery_threshold("history", "KS2", "romans") == engine_config.gaps.default_mastery_threshold


def test_template_scores_and_matching(engine_config):
    templates = {t.template_id: t for t in engine_config.recommendations.templates}
    assert templates["guided-practice"].score == pytest.approx(30.0)
    assert templates["one-to-one-tutoring"].score == pytest.approx(20.0)
    phonics = templates["phonics-catch-up"]
    assert phonics.matches("english", "reading-word-reading", "high", "high")
    assert not phonics.matches("maths", "reading-word-reading", "high", "high")
    assert not phonics.matches("english", "reading-word-reading", "low", "high")


def _write(tmp_path: Path, name: str, payload) -> Path:
    path = tmp_path / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_registry_rejects_invalid_files(tmp_path: Path):
    with pytest.raises(EngineConfigError):
        EngineConfigRegistry(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(EngineConfigError):
        EngineConfigRegistry(broken)

    with pytest.raises(EngineConfigError):
        EngineConfigRegistry(_write(tmp_path, "list.json", [1, 2, 3]))

    # Medium threshold must sit below the low-risk threshold.
    with pytest.raises(EngineConfigError):
        EngineConfigRegistry(_write(tmp_path, "risk.json", {"risk": {"low_threshold": 40, "medium_threshold": 60}}))

    with pytest.raises(EngineConfigError):
        EngineConfigRegistry(_write(tmp_path, "levels.json", {"difficulty": {"min_level": 8, "max_level": 3}}))

    template = {
        "template_id": "dup",
        "intervention_type": "x",
        "severities": ["low"],
        "risk_tiers": ["low"],
        "expected_impact": 10,
        "resource_cost": 1,
    }
    with pytest.raises(EngineConfigError):
        EngineConfigRegistry(_write(tmp_path, "dup.json", {"recommendations": {"templates": [template, template]}}))

    with pytest.raises(EngineConfigError):
        EngineConfigRegistry(_write(tmp_path, "extra.json", {"unexpected": True}))


def test_registry_reload_and_env_override(tmp_path: Path, monkeypatch):
    path = _write(tmp_path, "engine.json", {"window_size": 50})
    registry = EngineConfigRegistry(path)
    assert registry.config.window_size == 50

    path.write_text(json.dumps({"window_size": 75}), encoding="utf-8")
    registry.reload()
    assert registry.config.window_size == 75

    monkeypatch.setenv("ENGINE_CONFIG_PATH", str(path))
    assert load_engine_config().window_size == 75
