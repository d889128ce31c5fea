from clinicdesk.state_machine import Action
from clinicdesk.twiml import render_action, render_error

CONTINUE_URL = "https://voice.example.com/voice/continue"


class TestRenderAction:
    def test_reply_is_wrapped_in_one_gather(self):
        xml = render_action(Action(speak="When would you like to come in?"), CONTINUE_URL)
        assert xml.count("<Gather") == 1
        assert 'input="speech"' in xml
        assert f'action="{CONTINUE_URL}"' in xml
        assert 'actionOnEmptyResult="true"' in xml
        assert 'speechTimeout="auto"' in xml
        assert "<Say" in xml.split("<Gather", 1)[1]
        assert "When would you like to come in?" in xml
        assert "<Hangup" not in xml

    def test_terminal_action_hangs_up(self):
        xml = render_action(Action(speak="Goodbye.", end_call=True), CONTINUE_URL)
        assert "<Gather" not in xml
        assert "Goodbye." in xml
        assert xml.index("<Say") < xml.index("<Hangup")

    def test_terminal_without_speech(self):
        xml = render_action(Action(end_call=True), CONTINUE_URL)
        assert "<Say" not in xml
        assert "<Hangup" in xml

    def test_reply_text_is_escaped(self):
        xml = render_action(Action(speak="Parking & directions <here>"), CONTINUE_URL)
        assert "Parking &amp; directions &lt;here&gt;" in xml

    def test_voice_and_language(self):
        xml = render_action(Action(speak="Hi"), CONTINUE_URL, voice="Polly.Russell", language="en-GB")
        assert 'voice="Polly.Russell"' in xml
        assert 'language="en-GB"' in xml


def test_render_error_hangs_up():
    xml = render_error("Sorry, something went wrong.")
    assert "Sorry, something went wrong." in xml
    assert "<Hangup" in xml
