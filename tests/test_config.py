import pytest
from pydantic import ValidationError

from live_interpreter.config import InterpreterConfig, SupportedLanguage


def test_config_defaults():
    cfg = InterpreterConfig()
    assert cfg.rotation.max_session_sec == 270.0
    assert cfg.rotation.retry_backoff_sec == 5.0
    assert cfg.rotation.context_turns == 15
    assert cfg.audio.input_sample_rate == 16000
    assert cfg.audio.output_sample_rate == 24000
    assert cfg.audio.chunk_samples == 4096
    assert cfg.meeting.source_language is SupportedLanguage.ENGLISH
    assert cfg.meeting.target_language is SupportedLanguage.CHINESE
    assert len(SupportedLanguage) == 10


def test_merge_patch_is_nested_and_validated():
    cfg = InterpreterConfig()
    patched = cfg.merge_patch({"rotation": {"max_session_sec": 120}, "meeting": {"target_language": "Korean"}})
    assert patched.rotation.max_session_sec == 120
    assert patched.rotation.retry_backoff_sec == 5.0
    assert patched.meeting.target_language is SupportedLanguage.KOREAN
    assert cfg.rotation.max_session_sec == 270.0
    with pytest.raises(ValidationError):
        cfg.merge_patch({"rotation": {"max_session_sec": 0}})


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "interpreter.json"
    InterpreterConfig().merge_patch({"meeting": {"title": "Ops Sync"}}).save(path)
    assert InterpreterConfig.load(path).meeting.title == "Ops Sync"


def test_load_missing_or_invalid_file_uses_defaults(tmp_path):
    assert InterpreterConfig.load(tmp_path / "missing.json") == InterpreterConfig()
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert InterpreterConfig.load(bad) == InterpreterConfig()


def test_system_instruction_framing():
    cfg = InterpreterConfig()
    fresh = cfg.build_system_instruction(SupportedLanguage.ENGLISH, SupportedLanguage.CHINESE)
    assert fresh.startswith("CONTEXT: STARTING NEW MEETING.")
    assert "SOURCE: English. TARGET: Chinese." in fresh

    rotated = cfg.build_system_instruction(
        SupportedLanguage.SPANISH, SupportedLanguage.ENGLISH, history="[10:00:00] Input: hola",
    )
    assert "This is a session rotation. Continue translating naturally." in rotated
    assert "[10:00:00] Input: hola" in rotated
