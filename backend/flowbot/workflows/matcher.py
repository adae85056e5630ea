# /flowbot/workflows/matcher.py

from typing import Iterable, Optional

from flowbot.models.flow import Flow


def normalize_text(text: Optional[str]) -> str:
    return (text or "").strip().casefold()


def match_flow(candidate_flows: Iterable[Flow], message_text: Optional[str]) -> Optional[Flow]:
    """
    Returns the first active flow (in caller order) with a trigger keyword
    contained in the message, or None. Pure: no I/O, no re-sorting.
    """
    text = normalize_text(message_text)
    if not text:
        return None
    for flow in candidate_flows:
        if not flow.is_active:
            continue
        for keyword in flow.trigger_keywords:
            needle = normalize_text(keyword)
            if needle and needle in text:
                return flow
    return None
