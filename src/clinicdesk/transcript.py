"""Call history rendering for logs and reception follow-up."""

SPEAKER_LABELS = {"agent": "Receptionist", "user": "Caller"}


def to_plain_text(log: list[dict]) -> str:
    """One line per history entry: "Receptionist: ...", "Caller: ..." or "[Tool: name]"."""
    lines = []
    for entry in log or []:
        role = entry.get("role", "")
        if role in SPEAKER_LABELS:
            lines.append(f"{SPEAKER_LABELS[role]}: {entry['content']}")
        elif role == "tool":
            lines.append(f"[Tool: {entry['name']}]")
    return "\n".join(lines)


def _relative_entry(entry: dict, base_time: float) -> dict:
    out = {
        "t": round(entry["timestamp"] - base_time, 1),
        "role": entry["role"],
        "turn": entry.get("turn", 0),
    }
    # tool entries carry the tool name as content; the result is what matters
    if entry["role"] == "tool":
        out["name"] = entry.get("name", "")
        out["result"] = entry.get("result", {})
    elif "content" in entry:
        out["content"] = entry["content"]
    return out


def to_timestamped_dump(
    log: list[dict],
    start_time: float,
    call_sid: str,
    phone: str,
    outcome: str,
) -> dict:
    """Structured transcript for the end-of-call log line.

    Times are seconds since ``start_time``, or since the first stamped entry
    when ``start_time`` is 0. Unstamped entries are left out.
    """
    stamped = [entry for entry in log if "timestamp" in entry]
    base_time = start_time
    if base_time <= 0 and stamped:
        base_time = stamped[0]["timestamp"]

    return {
        "call_sid": call_sid,
        "phone": phone,
        "outcome": outcome,
        "entries": [_relative_entry(entry, base_time) for entry in stamped],
    }


def call_outcome(state) -> str:
    """One-word summary of how a call ended, for logs."""
    if state.booking_failed:
        return "booking_failed"
    if state.appointment_created:
        return "booked"
    if state.reschedule_done:
        return "rescheduled"
    if state.cancel_done:
        return "cancelled"
    if state.faq_answered:
        return "faq"
    return "no_action"
