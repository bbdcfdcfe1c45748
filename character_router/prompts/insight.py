from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "groups": {
        "alpha": {
            "name": "Verdant",
            "voice": "en-US-Neural2-D",
            "color": "green",
            "characteristics": "Achievement-oriented, committed, intellectual, action-focused, and pragmatic",
        },
        "beta": {
            "name": "Azure",
            "voice": "en-US-Neural2-F",
            "color": "blue",
            "characteristics": "Connection-focused, loyal, loves deeply, resilient, and cosmically aligned",
        },
        "gamma": {
            "name": "Crimson",
            "voice": "en-US-Neural2-G",
            "color": "red",
            "characteristics": "Boundary-pushing, fierce, spicy, raw energy, sensual, and transformative",
        },
        "delta": {
            "name": "Lunar",
            "voice": "en-US-Neural2-C",
            "color": "white",
            "characteristics": "Reflective, visionary, fluid, adaptable, truthful, and perception-oriented",
        },
        "epsilon": {
            "name": "Solar",
            "voice": "en-US-Neural2-A",
            "color": "yellow",
            "characteristics": "Generous, giving, expressive, emotionally abundant, vulnerable, and optimistic",
        },
    },
    "default_characteristics": "Balanced across all groups",
    "guidelines": [
        "Keep insights under 150 words",
        "Speak in the distinctive voice of {name}",
        "Reference the user's metric values indirectly",
        "Focus on the aspects most relevant to your group",
        "Include one thought-provoking question",
        "End with a subtle call to action",
    ],
    "request_template": "Generate a daily insight for a user with these metric values: {categories_json}",
}


@dataclass(slots=True, frozen=True)
class GroupProfile:
    id: str
    name: str
    voice: str
    color: str
    characteristics: str


def _cfg() -> dict[str, Any]:
    return load_prompt_json("insight.json", _DEFAULTS)


def load_group_profiles() -> dict[str, GroupProfile]:
    cfg = _cfg()
    raw_groups = cfg.get("groups")
    groups = raw_groups if isinstance(raw_groups, dict) else _DEFAULTS["groups"]
    fallback_traits = str(cfg.get("default_characteristics") or _DEFAULTS["default_characteristics"])
    profiles: dict[str, GroupProfile] = {}
    for group_id, raw in groups.items():
        if not isinstance(raw, dict):
            continue
        profiles[str(group_id)] = GroupProfile(
            id=str(group_id),
            name=str(raw.get("name") or group_id),
            voice=str(raw.get("voice") or ""),
            color=str(raw.get("color") or ""),
            characteristics=str(raw.get("characteristics") or fallback_traits),
        )
    return profiles


def build_insight_instructions(profile: GroupProfile, categories: Mapping[str, float]) -> str:
    cfg = _cfg()
    metric_lines = "\n".join(f"{category}: {value:g}" for category, value in categories.items())
    guidelines = cfg.get("guidelines") or _DEFAULTS["guidelines"]
    guideline_lines = "\n".join(f"* {str(item).format(name=profile.name)}" for item in guidelines)
    return (
        f"You are {profile.name}, the representative of the {profile.id} group ({profile.color} Group).\n\n"
        "Your role is to provide daily insights to members of your group that help them reflect on their journey.\n\n"
        "METRICS CONTEXT:\n"
        "These are the user's current metric values:\n"
        f"{metric_lines}\n\n"
        "GROUP CHARACTERISTICS:\n"
        f"{profile.characteristics}\n\n"
        "INSIGHT GUIDELINES:\n"
        f"{guideline_lines}\n\n"
        "The insight should feel personal, insightful, and aligned with your group's values and philosophy."
    )


def build_insight_request(categories: Mapping[str, float]) -> str:
    template = str(_cfg().get("request_template") or _DEFAULTS["request_template"])
    return template.format(categories_json=json.dumps(dict(categories), sort_keys=False))
