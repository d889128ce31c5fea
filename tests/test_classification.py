import pytest

from clinicdesk.classification import (
    IntentTag,
    PatternIntentClassifier,
    classify_booking_for,
    classify_group_answer,
    classify_yes_no,
    detect_group_booking,
    extract_two_names,
    is_goodbye,
    is_hangup_command,
    is_hangup_negated,
    is_hangup_question,
    matches_booking_invitation,
)


class TestHangup:
    def test_command(self):
        assert is_hangup_command("Please hang up now")
        assert is_hangup_command("you can disconnect")

    def test_question_is_not_a_command(self):
        assert is_hangup_question("Are you going to hang up on me?")
        assert not is_hangup_command("Are you going to hang up on me?")

    def test_plain_sentence(self):
        assert not is_hangup_command("I hung my coat up")

    @pytest.mark.parametrize("text", [
        "Please don't hang up yet",
        "Hold on, don't hang up, I need to find my Medicare card",
        "do not end the call",
        "I'm not going to hang up",
    ])
    def test_negated_is_not_a_command(self, text):
        assert is_hangup_negated(text)
        assert not is_hangup_command(text)


class TestGoodbye:
    @pytest.mark.parametrize("text", ["No, that's all thanks", "bye", "I'm good", "nothing else"])
    def test_closing_phrases(self, text):
        assert is_goodbye(text)

    def test_question_after_no_is_not_goodbye(self):
        assert not is_goodbye("No, but where do I park?")

    def test_empty(self):
        assert not is_goodbye("")

    def test_whole_words_only(self):
        assert not is_goodbye("Nobody told me")


class TestPatternIntentClassifier:
    @pytest.mark.parametrize("text, tag", [
        ("hang up", IntentTag.HANGUP),
        ("can you hang up please", IntentTag.HANGUP_QUESTION),
        ("how much does a consult cost", IntentTag.FAQ),
        ("no that's it, bye", IntentTag.GOODBYE),
        ("I'd like to see a doctor on Tuesday", IntentTag.OTHER),
        ("   ", IntentTag.OTHER),
        ("please don't hang up", IntentTag.OTHER),
        ("no, don't disconnect, I'm still here", IntentTag.OTHER),
    ])
    def test_classify(self, text, tag):
        assert PatternIntentClassifier().classify(text) is tag

    def test_faq_wins_over_goodbye(self):
        assert PatternIntentClassifier().classify("no, what are your opening hours?") is IntentTag.FAQ


class TestBookingFor:
    @pytest.mark.parametrize("text", ["Myself", "it's for me", "yes that's me"])
    def test_myself(self, text):
        assert classify_booking_for(text) == "myself"

    @pytest.mark.parametrize("text", [
        "No, it's for my daughter",
        "yes, for my son",
        "someone else",
        "not me",
        "on behalf of my mum",
    ])
    def test_someone_else(self, text):
        assert classify_booking_for(text) == "someone_else"

    @pytest.mark.parametrize("text", ["", "hmm", "what do you mean"])
    def test_unclear(self, text):
        assert classify_booking_for(text) is None


class TestYesNo:
    def test_yes(self):
        assert classify_yes_no("Yeah sounds good") == "yes"

    def test_no_wins(self):
        assert classify_yes_no("yes, no wait") == "no"

    def test_unclear(self):
        assert classify_yes_no("maybe later") == "unclear"


class TestExtractTwoNames:
    def test_first_name_and_full_name(self):
        names = extract_two_names("Michael and Merrick Bishop")
        assert [p.name for p in names] == ["Michael", "Merrick Bishop"]
        assert [p.relation for p in names] == ["caller", "family"]

    def test_two_full_names_in_a_sentence(self):
        names = extract_two_names("It's for Jane Smith and Emma Smith please")
        assert [p.name for p in names] == ["Jane Smith", "Emma Smith"]

    def test_pronouns_are_not_names(self):
        assert extract_two_names("Me and my son") is None

    def test_no_conjunction(self):
        assert extract_two_names("Jane Smith") is None

    def test_lowercase_transcript(self):
        assert extract_two_names("michael and merrick") is None


class TestGroupDetection:
    @pytest.mark.parametrize("text", [
        "I need appointments for me and my son",
        "can we book both of us in",
        "it's for myself and my wife",
    ])
    def test_group_requests(self, text):
        assert detect_group_booking(text)

    def test_single_booking(self):
        assert not detect_group_booking("book for myself please")


class TestGroupAnswer:
    @pytest.mark.parametrize("text,expected", [
        ("yes that works", "confirm"),
        ("No worries, that works", "confirm"),
        ("not a problem", "confirm"),
        ("no, a different time", "decline"),
        ("no worries, but that won't work", "decline"),
        ("hmm let me think", None),
    ])
    def test_classify(self, text, expected):
        assert classify_group_answer(text) == expected


class TestBookingInvitation:
    @pytest.mark.parametrize("reply", [
        "Would you like me to book that in?",
        "When would you like to come in?",
        "Shall I confirm that for you?",
    ])
    def test_invitations(self, reply):
        assert matches_booking_invitation(reply)

    def test_closing_line_is_not_an_invitation(self):
        assert not matches_booking_invitation("Thanks for calling, have a lovely day.")
