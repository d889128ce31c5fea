"""Render state-machine actions as TwiML call-control instructions.

Every non-terminal response is a single speech <Gather> with the reply
<Say> nested inside, so the caller can barge in and an empty result still
posts back. Terminal responses say the reply and hang up.
"""

from twilio.twiml.voice_response import VoiceResponse

from clinicdesk.state_machine import Action

DEFAULT_VOICE = "Polly.Olivia-Neural"
DEFAULT_LANGUAGE = "en-AU"


def render_action(
    action: Action,
    action_url: str,
    voice: str = DEFAULT_VOICE,
    language: str = DEFAULT_LANGUAGE,
) -> str:
    response = VoiceResponse()

    if action.end_call:
        if action.speak:
            response.say(action.speak, voice=voice, language=language)
        response.hangup()
        return str(response)

    gather = response.gather(
        input="speech",
        action=action_url,
        method="POST",
        speech_timeout="auto",
        language=language,
        action_on_empty_result=True,
        barge_in=True,
    )
    if action.speak:
        gather.say(action.speak, voice=voice, language=language)
    return str(response)


def render_error(message: str, voice: str = DEFAULT_VOICE, language: str = DEFAULT_LANGUAGE) -> str:
    response = VoiceResponse()
    response.say(message, voice=voice, language=language)
    response.hangup()
    return str(response)
