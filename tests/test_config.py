import json

import pytest

from discord_soundboard.config import load_config, parse_intro_rules, redact_config


def test_parse_intro_rules_accepts_string_ids():
    rules = parse_intro_rules(
        {
            "intros": {
                "channels": ["7", 8],
                "user_intros": [
                    {"user": "42", "sound_file": "airhorn"},
                    {"user": 42, "sound_file": "bruh"},
                    {"user": 43, "sound_file": "bruh"},
                ],
            }
        }
    )

    assert rules.channels == frozenset({7, 8})
    assert rules.rule_for(42).clip_name == "airhorn"
    assert rules.rule_for(43).clip_name == "bruh"
    assert rules.rule_for(44) is None


def test_missing_intro_section_means_no_rules():
    rules = parse_intro_rules({"token": "x"})

    assert rules.rules == ()
    assert rules.channels == frozenset()


@pytest.mark.parametrize(
    "section",
    [
        {"user_intros": [{"user": 1}]},
        {"user_intros": [{"user": "abc", "sound_file": "x"}]},
        {"channels": ["general"]},
    ],
)
def test_malformed_intro_config_is_rejected(section):
    with pytest.raises(ValueError):
        parse_intro_rules({"intros": section})


def test_redact_and_load(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"token": "secret", "sound_dir": "./audio"}))

    cfg = load_config(str(path))

    assert cfg["token"] == "secret"
    assert redact_config(cfg) == {"token": "<redacted>", "sound_dir": "./audio"}
    assert cfg["token"] == "secret"
