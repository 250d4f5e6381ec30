from __future__ import annotations

import json
from pathlib import Path

import pytest

from nova_chat.models import CustomPersonality
from nova_chat.personalities import (
    BUILTIN_IDS,
    BuiltIn,
    Custom,
    PersonalityLibrary,
    PersonalityRegistry,
    personality_from_wire,
    personality_to_wire,
    resolve_system_prompt,
)


@pytest.mark.parametrize("pid", BUILTIN_IDS)
def test_builtin_prompts_are_distinct_and_non_empty(pid):
    prompt = resolve_system_prompt(pid)
    assert prompt.strip()
    others = {resolve_system_prompt(o) for o in BUILTIN_IDS if o != pid}
    assert prompt not in others


@pytest.mark.parametrize("pid", ["", "Grumpy", "nice", "Custom", "CHAOS "])
def test_unknown_ids_fall_back_to_default(pid):
    assert resolve_system_prompt(pid) == resolve_system_prompt("CHAOS")


def test_custom_prompt_is_used_verbatim():
    custom = CustomPersonality(name="Wizard", description="", prompt="  Speak in riddles.  ")
    assert resolve_system_prompt("Custom", custom) == "  Speak in riddles.  "
    assert resolve_system_prompt(Custom("Wizard", "", "Speak in riddles.")) == "Speak in riddles."


@pytest.mark.parametrize("prompt", ["", "   "])
def test_custom_without_prompt_falls_back(prompt):
    custom = CustomPersonality(name="Empty", prompt=prompt)
    assert resolve_system_prompt("Custom", custom) == resolve_system_prompt("CHAOS")


def test_custom_payload_ignored_for_builtin_selection():
    custom = CustomPersonality(name="Wizard", prompt="Speak in riddles.")
    assert resolve_system_prompt("Pirate", custom) == resolve_system_prompt("Pirate")


def test_registry_overrides_and_default():
    reg = PersonalityRegistry(prompts={"Nice": "Be nice.", "Evil": "nope"}, default="Nice")
    assert reg.resolve_system_prompt("Nice") == "Be nice."
    assert reg.resolve_system_prompt("whatever") == "Be nice."
    assert "Evil" not in reg.ids


def test_registry_rejects_unknown_default():
    reg = PersonalityRegistry(default="Evil")
    assert reg.default == "CHAOS"


def test_wire_round_trip():
    custom = Custom("Wizard", "riddles", "Speak in riddles.")
    assert personality_from_wire(*personality_to_wire(custom)) == custom
    assert personality_to_wire(BuiltIn("Pirate")) == ("Pirate", None)
    assert personality_from_wire("Custom", None) == BuiltIn("Custom")


def test_library_skips_duplicate_names(tmp_data_dir: Path):
    lib = PersonalityLibrary(tmp_data_dir)
    assert lib.add(CustomPersonality(name="Wizard", description="a", prompt="one"))
    assert not lib.add(CustomPersonality(name="Wizard", description="b", prompt="two"))
    assert [p.prompt for p in lib.list()] == ["one"]

    # explicit delete + recreate replaces
    assert lib.remove("Wizard")
    assert lib.add(CustomPersonality(name="Wizard", description="b", prompt="two"))
    assert lib.get("Wizard").prompt == "two"
    assert not lib.remove("Nobody")


def test_library_file_is_a_json_array(tmp_data_dir: Path):
    lib = PersonalityLibrary(tmp_data_dir)
    lib.add(CustomPersonality(name="Barista", description="coffee", prompt="Caffeinate."))
    raw = json.loads(lib.path.read_text(encoding="utf-8"))
    assert raw == [{"name": "Barista", "description": "coffee", "prompt": "Caffeinate."}]


def test_library_recovers_from_corrupt_file(tmp_data_dir: Path):
    lib = PersonalityLibrary(tmp_data_dir)
    lib.path.write_text("{not json", encoding="utf-8")
    assert lib.list() == []
    assert lib.add(CustomPersonality(name="Guru", prompt="Breathe."))
    assert [p.name for p in lib.list()] == ["Guru"]
