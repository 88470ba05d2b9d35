#!/usr/bin/env python3
"""Tests for profiles module: API behavior, profile selection, instruct layering."""

import sys
import unittest
from pathlib import Path

# Ensure bin/ is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "bin"))

from common import ConfigurationError
from profiles import (
    FAMILY_CHAT,
    FAMILY_TEXT,
    MANDATORY_FALLBACK_INSTRUCT,
    REQUIRED_SEQUENCES,
    get_proxy_by_name,
    instruct_enabled,
    resolve_api_behavior,
    resolve_effective_instruct,
    select_profile,
)


CAPS = {
    "openai": {"selected": "openai", "source": "openai"},
    "claude": {"selected": "openai", "source": "claude"},
    "koboldcpp": {"selected": "textgenerationwebui", "type": "koboldcpp"},
    "ooba": {"selected": "textgenerationwebui", "type": "ooba"},
    "a": {"selected": "other", "type": "generic"},
}


# ---------------------------------------------------------------------------
# ProfileResolver
# ---------------------------------------------------------------------------
class TestResolveApiBehavior(unittest.TestCase):

    def test_chat_marker_means_chat_family(self):
        b = resolve_api_behavior({"id": "p", "api": "claude"}, CAPS)
        self.assertEqual(b.family, FAMILY_CHAT)
        self.assertTrue(b.is_chat)
        self.assertEqual(b.completion_source, "claude")
        self.assertEqual(b.wire_api_type, "")

    def test_other_selected_means_text_family(self):
        b = resolve_api_behavior({"id": "p", "api": "koboldcpp"}, CAPS)
        self.assertEqual(b.family, FAMILY_TEXT)
        self.assertEqual(b.selected_backend, "textgenerationwebui")
        self.assertEqual(b.wire_api_type, "koboldcpp")

    def test_unknown_api_raises(self):
        with self.assertRaises(ConfigurationError) as ctx:
            resolve_api_behavior({"id": "p", "api": "nope"}, CAPS)
        self.assertEqual(ctx.exception.code, "unresolved-api")

    def test_missing_api_raises(self):
        with self.assertRaises(ConfigurationError):
            resolve_api_behavior({"id": "p"}, CAPS)

    def test_explicit_mode_overrides_family_only(self):
        b = resolve_api_behavior({"id": "p", "api": "ooba", "mode": "cc"}, CAPS)
        self.assertEqual(b.family, FAMILY_CHAT)
        self.assertEqual(b.wire_api_type, "ooba")

        b = resolve_api_behavior({"id": "p", "api": "openai", "mode": "TC"}, CAPS)
        self.assertEqual(b.family, FAMILY_TEXT)
        self.assertEqual(b.completion_source, "openai")

    def test_unrecognized_mode_is_ignored(self):
        b = resolve_api_behavior({"id": "p", "api": "openai", "mode": "banana"}, CAPS)
        self.assertEqual(b.family, FAMILY_CHAT)


class TestSelectProfile(unittest.TestCase):

    def test_select_by_id(self):
        profiles = [{"id": "x", "api": "openai"}, {"id": "y", "api": "ooba"}]
        self.assertEqual(select_profile(profiles, "y")["api"], "ooba")

    def test_missing_raises_no_profile(self):
        with self.assertRaises(ConfigurationError) as ctx:
            select_profile([{"id": "x"}], "z")
        self.assertEqual(ctx.exception.code, "no-profile")
        with self.assertRaises(ConfigurationError):
            select_profile([{"id": "x"}], None)


class TestProxyLookup(unittest.TestCase):

    def test_named_proxy(self):
        proxies = [{"name": "mine", "url": "http://proxy", "password": "pw"}]
        self.assertEqual(get_proxy_by_name(proxies, "mine")["url"], "http://proxy")

    def test_none_and_unknown(self):
        proxies = [{"name": "mine", "url": "http://proxy"}]
        self.assertIsNone(get_proxy_by_name(proxies, "None"))
        self.assertIsNone(get_proxy_by_name(proxies, ""))
        self.assertIsNone(get_proxy_by_name(proxies, "other"))


# ---------------------------------------------------------------------------
# InstructResolver
# ---------------------------------------------------------------------------
class TestInstructEnabled(unittest.TestCase):

    def test_global_enabled(self):
        self.assertTrue(instruct_enabled({"enabled": True}, {}))

    def test_profile_state_case_insensitive(self):
        self.assertTrue(instruct_enabled({}, {"instruct-state": "TRUE"}))
        self.assertFalse(instruct_enabled({}, {"instruct-state": "false"}))

    def test_profile_instruct_name(self):
        self.assertTrue(instruct_enabled(None, {"instruct": "ChatML"}))
        self.assertFalse(instruct_enabled(None, {"instruct": "   "}))

    def test_all_off(self):
        self.assertFalse(instruct_enabled({"enabled": False}, {"preset": "x"}))


class TestResolveEffectiveInstruct(unittest.TestCase):

    PRESETS = {
        "ChatML": {"input_sequence": "<|im_start|>user\n", "output_sequence": "<|im_start|>assistant\n"},
        "Default": {"input_sequence": "### Instruction:\n"},
        "Wrapped": {"instruct": {"input_sequence": "[INST]"}},
    }

    def test_global_only_when_no_names(self):
        res = resolve_effective_instruct({"system_sequence": "S", "enabled": True}, {}, self.PRESETS)
        self.assertEqual(res.config["system_sequence"], "S")
        self.assertIsNone(res.name)
        self.assertTrue(res.enabled)

    def test_instruct_name_before_preset_name(self):
        res = resolve_effective_instruct(
            {"system_sequence": "S"},
            {"instruct": "ChatML", "preset": "Default"},
            self.PRESETS,
        )
        self.assertEqual(res.config["input_sequence"], "<|im_start|>user\n")
        self.assertEqual(res.config["system_sequence"], "S")
        self.assertEqual(res.name, "ChatML")

    def test_preset_name_used_when_instruct_missing(self):
        res = resolve_effective_instruct({}, {"instruct": "Unknown", "preset": "Default"}, self.PRESETS)
        self.assertEqual(res.config["input_sequence"], "### Instruction:\n")
        self.assertEqual(res.name, "Unknown")

    def test_nested_instruct_block(self):
        res = resolve_effective_instruct({}, {"preset": "Wrapped"}, self.PRESETS)
        self.assertEqual(res.config["input_sequence"], "[INST]")

    def test_global_presets_key_is_not_merged(self):
        res = resolve_effective_instruct({"presets": {"x": {}}, "stop_sequence": "</s>"}, {}, {})
        self.assertNotIn("presets", res.config)
        self.assertEqual(res.seq("stop_sequence"), "</s>")

    def test_mandatory_backend_gets_full_fallback(self):
        res = resolve_effective_instruct({}, {"api": "koboldcpp"}, {}, "koboldcpp")
        for key in REQUIRED_SEQUENCES:
            self.assertEqual(res.config[key], MANDATORY_FALLBACK_INSTRUCT[key])
        self.assertTrue(res.has_required_sequences)

    def test_mandatory_fallback_is_deterministic(self):
        a = resolve_effective_instruct({"input_sequence": "U"}, {}, {}, "koboldcpp")
        b = resolve_effective_instruct({"input_sequence": "U"}, {}, {}, "koboldcpp")
        self.assertEqual(a.config, b.config)
        self.assertEqual(a.config["input_sequence"], "U")
        self.assertEqual(a.config["system_sequence"], MANDATORY_FALLBACK_INSTRUCT["system_sequence"])

    def test_empty_required_sequence_does_not_blank_fallback(self):
        res = resolve_effective_instruct({"system_sequence": ""}, {}, {}, "koboldcpp")
        self.assertEqual(res.config["system_sequence"], MANDATORY_FALLBACK_INSTRUCT["system_sequence"])

    def test_complete_config_untouched_on_mandatory_backend(self):
        cfg = {"system_sequence": "S", "input_sequence": "U", "output_sequence": "A"}
        res = resolve_effective_instruct(cfg, {}, {}, "koboldcpp")
        self.assertEqual(res.config, cfg)

    def test_other_backends_not_filled(self):
        res = resolve_effective_instruct({}, {}, {}, "ooba")
        self.assertEqual(res.config, {})
        self.assertFalse(res.has_required_sequences)
        self.assertEqual(res.seq("system_sequence"), "")


if __name__ == "__main__":
    unittest.main()
