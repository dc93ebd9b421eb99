"""Tests for EnvelopeClassifier.

Covers:
- Call start/detail/end envelopes driving the meeting lifecycle
- Message creation, edit (with reactions) and deletion
- Typing indicators
- Unknown and malformed envelopes yielding no events
"""

from __future__ import annotations

import json

import pytest

from src.teams_bridge.schemas import ChannelKind, EventKind, Meeting, Message, Participant, Reaction
from tests.fakes import call_detail, call_ended, call_start, chat_message

DETAILS = {
    "meetingtitle": "Physics",
    "meetingJoinUrl": "https://join.example.com/physics",
    "organizerId": "8:orgid:instructor",
}


# ── Meetings ────────────────────────────────────────────────────────────────


class TestMeetingLifecycle:
    def test_start_then_detail_emits_new_meeting(self, classifier, correlator, clock):
        assert classifier.classify(call_start("19:abcd", clock.iso())) == []
        assert correlator.is_pending("19:abcd")

        clock.advance(10)
        events = classifier.classify(call_detail("19:abcd", DETAILS, channel="19:classchan"))

        assert len(events) == 1
        assert events[0].kind is EventKind.NEW_MEETING
        meeting = events[0].payload
        assert isinstance(meeting, Meeting)
        assert meeting.id == "19:abcd"
        assert meeting.title == "Physics"
        assert meeting.join_url == "https://join.example.com/physics"
        assert meeting.started_by == "8:orgid:instructor"
        assert meeting.channel.id == "19:classchan"

    def test_meeting_id_prefers_skypeguid(self, classifier, clock):
        classifier.classify(call_start("1700000000001", clock.iso()))
        events = classifier.classify(call_detail("1700000000001", DETAILS, skypeguid="guid-42"))
        assert events[0].payload.id == "guid-42"

    def test_detail_after_window_emits_nothing(self, classifier, correlator, clock):
        classifier.classify(call_start("19:abcd", clock.iso()))
        clock.advance(61)

        assert classifier.classify(call_detail("19:abcd", DETAILS)) == []
        assert not correlator.is_pending("19:abcd")
        assert classifier.classify(call_detail("19:abcd", DETAILS)) == []

    def test_detail_without_start_emits_nothing(self, classifier):
        assert classifier.classify(call_detail("19:unknown", DETAILS)) == []

    def test_detail_without_join_url_waits(self, classifier, correlator, clock):
        classifier.classify(call_start("r1", clock.iso()))
        assert classifier.classify(call_detail("r1", {"meetingtitle": "x"})) == []
        assert correlator.is_pending("r1")
        assert len(classifier.classify(call_detail("r1", DETAILS))) == 1

    def test_ended_call_emits_meeting_ended_with_participants(self, classifier, correlator, clock):
        classifier.classify(call_start("r1", clock.iso()))
        classifier.classify(call_detail("r1", DETAILS))

        events = classifier.classify(call_ended("r1"))

        assert [e.kind for e in events] == [EventKind.MEETING_ENDED]
        meeting = events[0].payload
        assert meeting.id == "r1"
        assert meeting.title == "Physics"
        assert meeting.participants == [Participant(id="8:user1", name="Alice")]
        assert not correlator.is_resolved("r1")

    def test_ended_unknown_call_still_reports_participants(self, classifier, correlator):
        events = classifier.classify(call_ended("r-unknown"))

        assert events[0].kind is EventKind.MEETING_ENDED
        assert events[0].payload.title is None
        assert events[0].payload.participants == [Participant(id="8:user1", name="Alice")]
        assert correlator.cache.pending == {}
        assert correlator.cache.resolved == {}

    def test_ended_clears_pending_meeting(self, classifier, correlator, clock):
        classifier.classify(call_start("r1", clock.iso()))
        classifier.classify(call_ended("r1"))
        assert not correlator.is_pending("r1")

    def test_ended_update_for_resolved_meeting(self, classifier, correlator, clock):
        classifier.classify(call_start("r1", clock.iso()))
        classifier.classify(call_detail("r1", DETAILS))

        events = classifier.classify(call_ended("r1", resource_type="MessageUpdate"))
        assert [e.kind for e in events] == [EventKind.MEETING_ENDED]

        again = classifier.classify(call_ended("r1", resource_type="MessageUpdate"))
        assert again == []

    def test_start_without_time_uses_clock(self, classifier, correlator, clock):
        envelope = call_start("r1", "")
        classifier.classify(envelope)
        assert correlator.cache.pending["r1"] == clock.now


# ── Messages ────────────────────────────────────────────────────────────────


class TestMessages:
    def test_new_message(self, classifier):
        events = classifier.classify(chat_message())

        assert [e.kind for e in events] == [EventKind.NEW_MESSAGE]
        message = events[0].payload
        assert isinstance(message, Message)
        assert message.id == "1700000000123"
        assert message.content == "<p>hello</p>"
        assert message.user.id == "8:orgid:user-a"
        assert message.user.name == "Alice"
        assert message.channel.id == "19:chat@thread.v2"
        assert message.channel.kind is ChannelKind.CHAT
        assert message.client_message_id == "555"
        assert message.reactions == {}

    def test_topic_channel(self, classifier):
        events = classifier.classify(
            chat_message(threadtype="topic", threadtopic="General", channel="19:team@thread.skype")
        )
        channel = events[0].payload.channel
        assert channel.kind is ChannelKind.TOPIC
        assert channel.title == "General"

    def test_unknown_thread_type_has_no_kind(self, classifier):
        events = classifier.classify(chat_message(threadtype="space"))
        assert events[0].payload.channel.kind is None

    def test_channel_falls_back_to_recipient(self, classifier):
        events = classifier.classify(chat_message(conversationLink=None, to="19:fallback@thread.v2"))
        assert events[0].payload.channel.id == "19:fallback@thread.v2"

    def test_plain_text_message(self, classifier):
        events = classifier.classify(chat_message(messagetype="Text"))
        assert events[0].kind is EventKind.NEW_MESSAGE

    def test_edit_with_reactions(self, classifier):
        emotions = [
            {"key": "like", "users": [{"mri": "8:u1", "time": 1}, {"mri": "8:u2", "time": 2}]},
            {"key": "heart", "users": [{"mri": "8:u3"}]},
            {"key": "laugh", "users": []},
        ]
        events = classifier.classify(
            chat_message(resource_type="MessageUpdate", properties={"emotions": json.dumps(emotions)})
        )

        assert [e.kind for e in events] == [EventKind.MESSAGE_EDITED]
        assert events[0].payload.reactions == {"like": {"8:u1", "8:u2"}, "heart": {"8:u3"}}

    def test_reaction_keys_match_enum(self, classifier):
        emotions = [{"key": Reaction.YES.value, "users": [{"mri": "8:u1"}]}]
        events = classifier.classify(
            chat_message(resource_type="MessageUpdate", properties={"emotions": emotions})
        )
        assert events[0].payload.reactions[Reaction.LIKE.value] == {"8:u1"}

    def test_edit_without_reactions(self, classifier):
        events = classifier.classify(chat_message(resource_type="MessageUpdate"))
        assert events[0].kind is EventKind.MESSAGE_EDITED
        assert events[0].payload.reactions == {}

    def test_deleted_message(self, classifier):
        events = classifier.classify(
            chat_message(resource_type="MessageUpdate", properties={"deletetime": "1700000001000"})
        )
        assert [e.kind for e in events] == [EventKind.MESSAGE_DELETED]
        assert events[0].payload.id == "1700000000123"


# ── Typing ──────────────────────────────────────────────────────────────────


class TestTyping:
    def test_typing_indicator(self, classifier):
        events = classifier.classify(chat_message(messagetype="Control/Typing", content=""))

        assert [e.kind for e in events] == [EventKind.CHAT_USER_TYPING]
        assert events[0].payload.user_id == "8:orgid:user-a"
        assert events[0].payload.channel.id == "19:chat@thread.v2"

    def test_typing_update_is_ignored(self, classifier):
        envelope = chat_message(resource_type="MessageUpdate", messagetype="Control/Typing")
        assert classifier.classify(envelope) == []


# ── Ignored Envelopes ───────────────────────────────────────────────────────


class TestIgnored:
    @pytest.mark.parametrize(
        "envelope",
        [
            {},
            {"resourceType": "NewMessage"},
            {"resourceType": "NewMessage", "resource": "text"},
            {"resourceType": "UserPresence", "resource": {"id": "x"}},
            {"resourceType": "NewMessage", "resource": {"id": "x", "messagetype": "ThreadActivity/AddMember"}},
            {"resourceType": "ConversationUpdate", "resource": {"id": "x", "messagetype": "RichText/Html"}},
        ],
    )
    def test_unknown_envelopes(self, classifier, envelope):
        assert classifier.classify(envelope) == []

    def test_message_without_sender(self, classifier):
        assert classifier.classify(chat_message(**{"from": None})) == []

    def test_message_without_channel(self, classifier):
        assert classifier.classify(chat_message(conversationLink=None)) == []

    def test_call_without_id(self, classifier):
        envelope = {"resourceType": "NewMessage", "resource": {"messagetype": "Event/Call"}}
        assert classifier.classify(envelope) == []


class TestNonObjectProperties:
    @pytest.mark.parametrize("properties", ["oops", ["x"], 42])
    def test_message_update_with_odd_properties_is_an_edit(self, classifier, properties):
        events = classifier.classify(chat_message(resource_type="MessageUpdate", properties=properties))

        assert [e.kind for e in events] == [EventKind.MESSAGE_EDITED]
        assert events[0].payload.reactions == {}

    @pytest.mark.parametrize("properties", ["oops", ["x"]])
    def test_call_update_with_odd_properties_stays_pending(self, classifier, correlator, clock, properties):
        classifier.classify(call_start("r1", clock.iso()))
        envelope = call_detail("r1", None)
        envelope["resource"]["properties"] = properties

        assert classifier.classify(envelope) == []
        assert correlator.is_pending("r1")
