import json

import pytest

from clinicdesk.errors import ConfigurationError
from clinicdesk.knowledge import KnowledgeBase, format_for_voice, load_knowledge, parse_entries


@pytest.fixture
def base():
    return KnowledgeBase(parse_entries({
        "hours": "We're open Monday to Friday, 8am to 6pm",
        "parking": "Free parking out the front.",
        "prices": "A standard consult is $85.",
        "insurance": "We bulk bill pensioners and children.",
    }))


class TestMatch:
    @pytest.mark.parametrize("question,category", [
        ("what time do you open on saturday?", "hours"),
        ("is there anywhere to park", "parking"),
        ("how much does it cost", "prices"),
        ("do you bulk bill?", "insurance"),
    ])
    def test_routes_question_to_category(self, base, question, category):
        assert [e.category for e in base.match(question)] == [category]

    def test_unrelated_question_matches_nothing(self, base):
        assert base.match("can I book for tomorrow") == []
        assert base.answer_for("can I book for tomorrow") is None

    def test_keywords_match_whole_words(self, base):
        # "parkinson" is not "park"
        assert base.match("do you see parkinsons patients") == []

    def test_answer_for(self, base):
        assert base.answer_for("where do I park?") == "Free parking out the front."


class TestParseEntries:
    def test_mapping_gets_default_keywords_and_voice_text(self):
        (entry,) = parse_entries({"Hours": "Open 8 to 6"})
        assert entry.category == "hours"
        assert "open" in entry.keywords
        assert entry.answer == "Open 8 to 6."

    def test_records_with_custom_keywords(self):
        entries = parse_entries([
            {"category": "physio", "answer": "Dr Lee does physio on Tuesdays.", "keywords": ["Physio", "physiotherapy"]},
        ])
        assert entries[0].keywords == ("physio", "physiotherapy")
        assert KnowledgeBase(entries).answer_for("do you have a physio?") == "Dr Lee does physio on Tuesdays."

    def test_custom_category_without_keywords_matches_its_name(self):
        (entry,) = parse_entries([{"category": "wheelchair access", "answer": "Ramp at the side door."}])
        assert entry.keywords == ("wheelchair access",)

    def test_record_without_answer_is_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_entries([{"category": "hours"}])

    def test_scalar_is_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_entries("open 8 to 6")


def test_format_for_voice_drops_links_and_addresses():
    text = format_for_voice("Book at https://clinic.example.com or write to desk@clinic.example.com")
    assert text == "Book at our website or write to email us."


class TestPromptSection:
    def test_empty_base_has_no_section(self):
        assert KnowledgeBase().prompt_section("hours?") == ""
        assert not KnowledgeBase()

    def test_without_question_lists_everything_in_order(self, base):
        section = base.prompt_section()
        assert section.startswith("CLINIC INFO")
        assert "Relevant" not in section
        assert section.index("- hours:") < section.index("- parking:")


class TestLoadKnowledge:
    def test_no_path_gives_empty_base(self):
        assert not load_knowledge("")

    def test_missing_file_is_a_warning(self, tmp_path, caplog):
        assert not load_knowledge(str(tmp_path / "nope.json"))
        assert "not found" in caplog.text

    def test_loads_json_file(self, tmp_path):
        path = tmp_path / "knowledge.json"
        path.write_text(json.dumps({"parking": "Free parking out the front."}), encoding="utf-8")
        base = load_knowledge(str(path))
        assert base.answer_for("parking?") == "Free parking out the front."

    def test_bad_json_is_a_configuration_error(self, tmp_path):
        path = tmp_path / "knowledge.json"
        path.write_text("{hours: 8 to 6", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_knowledge(str(path))
