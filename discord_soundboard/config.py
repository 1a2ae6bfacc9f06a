import json

from .intro import IntroRule, IntroRules


def redact_config(cfg: dict) -> dict:
    """Return a shallow copy of the config suitable for logging without the token."""
    if not isinstance(cfg, dict):
        return cfg
    out = dict(cfg)
    if "token" in out:
        out["token"] = "<redacted>"
    return out


def load_config(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _as_id(value, what: str) -> int:
    # Discord ids are often written as strings to survive JSON number limits
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {what} id in intro config: {value!r}") from None


def parse_intro_rules(cfg: dict) -> IntroRules:
    """Build the intro rule table from the ``intros`` section of the config.

    Expected shape::

        {"channels": [123, ...],
         "user_intros": [{"user": 456, "sound_file": "airhorn"}, ...]}
    """
    section = cfg.get("intros") or {}
    if not isinstance(section, dict):
        raise ValueError("'intros' must be an object")

    channels = frozenset(_as_id(c, "channel") for c in section.get("channels") or [])
    rules = []
    for entry in section.get("user_intros") or []:
        if not isinstance(entry, dict) or "user" not in entry or "sound_file" not in entry:
            raise ValueError(f"Intro entries need 'user' and 'sound_file': {entry!r}")
        rules.append(IntroRule(_as_id(entry["user"], "user"), str(entry["sound_file"])))
    return IntroRules(tuple(rules), channels)
