import os
import json
import tempfile
import unittest

from api.personas import (
    PERSONAS, list_personas, resolve_persona, load_directives, clear_directives_cache,
    build_system_prompt, build_transcript, build_parts,
)


class TestResolvePersona(unittest.TestCase):
    def test_accepts_slug_name_title_and_label(self):
        self.assertEqual(resolve_persona('alfa'), 'alfa')
        self.assertEqual(resolve_persona('Vizi'), 'vizi')
        self.assertEqual(resolve_persona('finance expert'), 'cortex')
        self.assertEqual(resolve_persona('Marketing (Alfa)'), 'alfa')

    def test_unknown_persona_is_general(self):
        self.assertIsNone(resolve_persona('Nobody'))
        self.assertIsNone(resolve_persona(''))
        self.assertIsNone(resolve_persona(None))

    def test_catalogue_listing(self):
        listed = list_personas()
        self.assertEqual(len(listed), len(PERSONAS))
        self.assertEqual(listed[0]['id'], 'alfa')


class TestSystemPrompt(unittest.TestCase):
    def test_persona_line_included(self):
        prompt = build_system_prompt('bolt')
        self.assertIn('Bolt', prompt)
        self.assertIn('Project Manager', prompt)

    def test_general_prompt_has_no_persona(self):
        self.assertNotIn('Your persona', build_system_prompt(None))

    def test_directives_and_company_blocks(self):
        directives = {
            "default": {"hard_rules": ["Be concrete."], "soft_rules": ["Use bullets."], "tone": "calm",
                        "probing": {"goals": ["KPI", "budget"]}},
            "personas": {"Alfa": {"kpis": ["ROAS"], "hard_rules": ["Measure everything."],
                                  "probing_priority": ["goals"]}},
        }
        prompt = build_system_prompt('alfa', directives=directives, company={"name": "Acme", "size": 12})

        self.assertIn("HARD_RULES:\n1. Be concrete.\n2. Measure everything.", prompt)
        self.assertIn("SOFT_RULES:\n1. Use bullets.", prompt)
        self.assertIn("KPIs: ROAS", prompt)
        self.assertIn("TONE: calm", prompt)
        self.assertIn("- goals: KPI | budget", prompt)
        self.assertIn("PRIORITY: goals", prompt)
        self.assertIn("- name: Acme", prompt)
        self.assertIn("- size: 12", prompt)


class TestPayload(unittest.TestCase):
    def test_transcript_format_and_limit(self):
        messages = [
            {"role": "user", "text": "old"},
            {"role": "assistant", "text": "hi"},
            {"role": "user", "text": "plan?"},
        ]
        text = build_transcript("SYS", messages, limit=2)
        self.assertEqual(text, "SYS\n\nAssistant: hi\nUser: plan?\nAssistant:")

    def test_parts_keep_valid_files_only(self):
        files = [
            {"mime": "image/png", "base64": "data:image/png;base64,AAAA"},
            {"mime": "application/pdf"},
            {"mime": "image/png", "base64": 12345},
            {"mime": "text/plain", "base64": "BBBB"},
            {"mime": "text/plain", "base64": "CCCC"},
        ]
        parts = build_parts("hello", files, limit=2)
        self.assertEqual(parts, [
            {"text": "hello"},
            {"inline_data": {"mime_type": "image/png", "data": "AAAA"}},
            {"inline_data": {"mime_type": "text/plain", "data": "BBBB"}},
        ])


class TestLoadDirectives(unittest.TestCase):
    def setUp(self):
        clear_directives_cache()
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        clear_directives_cache()
        self.tmp.cleanup()

    def test_missing_or_invalid_file_gives_empty_document(self):
        self.assertEqual(load_directives(os.path.join(self.tmp.name, 'missing.json'))['personas'], {})

        bad = os.path.join(self.tmp.name, 'bad.json')
        with open(bad, 'w') as f:
            f.write('{oops')
        self.assertEqual(load_directives(bad)['default'], {})

    def test_file_is_cached(self):
        path = os.path.join(self.tmp.name, 'ai-directives.json')
        with open(path, 'w') as f:
            json.dump({"default": {"tone": "calm"}, "personas": {}}, f)
        self.assertEqual(load_directives(path)['default']['tone'], 'calm')

        with open(path, 'w') as f:
            json.dump({"default": {"tone": "loud"}, "personas": {}}, f)
        self.assertEqual(load_directives(path)['default']['tone'], 'calm')


if __name__ == '__main__':
    unittest.main()
