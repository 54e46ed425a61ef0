"""
Tests for event classification.

Tests cover:
- Text, image, document and quoted-text envelopes from live messages
- from/to routing for 1:1 and group chats
- Status broadcasts dropped
- History messages: text only, timestamp required, relayed only on request
"""

from datetime import datetime, timezone

from chatrelay.classifier import EventClassifier, extract_text
from chatrelay.envelope import EnvelopeKind
from chatrelay.events import HistoryMessage, MediaAttachment, MediaKind, MessageContent, MessageKey
from chatrelay.exceptions import ProtocolError
from chatrelay.utils import JID

from conftest import OWN_USER, make_message_event


class TestExtractText:

    def test_conversation_first(self):
        assert extract_text(MessageContent(conversation="plain", extended_text="ext")) == "plain"

    def test_extended_text_fallback(self):
        assert extract_text(MessageContent(extended_text="ext")) == "ext"

    def test_none(self):
        assert extract_text(None) == ""


class TestLiveText:

    def test_incoming_one_to_one(self, classifier):
        result = classifier.classify_message(make_message_event(text="Hello"))

        assert len(result.envelopes) == 1
        envelope = result.envelopes[0].envelope
        assert envelope.kind == EnvelopeKind.TEXT
        assert envelope.sender == "15551112222"
        assert envelope.recipient == OWN_USER
        assert envelope.body == "Hello"
        assert envelope.message_id == "M1"
        assert envelope.chat_id == "15551112222@s.whatsapp.net"
        assert envelope.parent_message_id == ""
        assert result.envelopes[0].blob is None

        assert result.record.id == "M1"
        assert result.record.content == "Hello"
        assert result.record.sender == "15551112222"

    def test_outgoing_one_to_one(self, classifier):
        result = classifier.classify_message(make_message_event(text="Hi back", is_from_me=True))

        envelope = result.envelopes[0].envelope
        assert envelope.sender == OWN_USER
        assert envelope.recipient == "15551112222"
        assert result.record.is_from_me is True

    def test_group_routes_to_group_jid(self, classifier):
        event = make_message_event(chat="120363012345@g.us", sender="15553334444@s.whatsapp.net", text="Hey all")

        envelope = classifier.classify_message(event).envelopes[0].envelope

        assert envelope.sender == "15553334444"
        assert envelope.recipient == "120363012345@g.us"

    def test_admin_phone_configured(self, messaging_client):
        classifier = EventClassifier(messaging_client, admin_phone="15557770000")

        envelope = classifier.classify_message(make_message_event(text="Hello")).envelopes[0].envelope

        assert envelope.admin_phone == "15557770000"

    def test_admin_phone_defaults_to_own_number(self, classifier):
        envelope = classifier.classify_message(make_message_event(text="Hello")).envelopes[0].envelope

        assert envelope.admin_phone == OWN_USER

    def test_extended_text_is_relayed(self, classifier):
        result = classifier.classify_message(make_message_event(extended_text="a link https://example.com"))

        assert result.envelopes[0].envelope.body == "a link https://example.com"
        assert result.record.content == "a link https://example.com"

    def test_status_broadcast_dropped(self, classifier):
        event = make_message_event(chat="status@broadcast", sender="15551112222@s.whatsapp.net", text="story")

        assert classifier.classify_message(event).is_empty

    def test_empty_message_produces_nothing(self, classifier):
        assert classifier.classify_message(make_message_event()).is_empty


class TestLiveMedia:

    def test_document_with_caption(self, messaging_client, classifier):
        messaging_client.media["doc-1"] = b"%PDF-1.4"
        event = make_message_event(document=MediaAttachment(
            kind=MediaKind.DOCUMENT, caption="invoice", mimetype="application/pdf",
            filename="invoice.pdf", handle="doc-1",
        ))

        result = classifier.classify_message(event)

        assert len(result.envelopes) == 1
        pending = result.envelopes[0]
        assert pending.envelope.kind == EnvelopeKind.DOCUMENT
        assert pending.envelope.body == "invoice"
        assert pending.envelope.blob_url == ""
        assert pending.blob.data == b"%PDF-1.4"
        assert pending.blob.filename == "invoice.pdf"
        assert pending.blob.content_type == "application/pdf"
        assert result.record.content == "invoice"

    def test_image_without_filename_gets_one(self, messaging_client, classifier):
        messaging_client.media["img-1"] = b"\xff\xd8\xff"
        event = make_message_event(image=MediaAttachment(kind=MediaKind.IMAGE, handle="img-1"))

        pending = classifier.classify_message(event).envelopes[0]

        assert pending.envelope.kind == EnvelopeKind.IMAGE
        assert pending.blob.content_type == "image/jpeg"
        assert pending.blob.filename.startswith("image_M1")

    def test_download_failure_drops_only_that_envelope(self, classifier):
        event = make_message_event(
            text="see attached",
            image=MediaAttachment(kind=MediaKind.IMAGE, handle="missing"),
        )

        result = classifier.classify_message(event)

        assert [p.envelope.kind for p in result.envelopes] == [EnvelopeKind.TEXT]
        assert result.record is not None

    def test_download_protocol_error_is_not_raised(self, messaging_client, classifier):
        def broken(attachment):
            raise ProtocolError("media expired")
        messaging_client.download = broken
        event = make_message_event(document=MediaAttachment(kind=MediaKind.DOCUMENT, handle="doc-1"))

        assert classifier.classify_message(event).envelopes == []


class TestQuotedText:

    def test_quoted_text_yields_second_envelope(self, classifier):
        event = make_message_event(text="I agree", quoted_text="Shall we meet at 5?")

        result = classifier.classify_message(event)

        bodies = [p.envelope.body for p in result.envelopes]
        assert bodies == ["I agree", "Shall we meet at 5?"]
        quoted = result.envelopes[1].envelope
        assert quoted.message_id == ""
        assert quoted.parent_message_id == ""
        assert result.record.content == "I agree"


class TestHistory:

    CHAT = JID("15551112222")

    def _message(self, text="old text", timestamp=1736935200, **key):
        return HistoryMessage(
            key=MessageKey(id=key.pop("id", "H1"), **key),
            message=MessageContent(conversation=text),
            timestamp=timestamp,
        )

    def test_text_is_stored_not_relayed(self, classifier):
        result = classifier.classify_history(self.CHAT, self._message())

        assert result.envelopes == []
        assert result.record.id == "H1"
        assert result.record.sender == "15551112222"
        assert result.record.timestamp == datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

    def test_relayed_when_enabled(self, messaging_client):
        classifier = EventClassifier(messaging_client, relay_history=True)

        result = classifier.classify_history(self.CHAT, self._message())

        assert len(result.envelopes) == 1
        assert result.envelopes[0].envelope.kind == EnvelopeKind.TEXT

    def test_from_me_uses_own_number(self, classifier):
        result = classifier.classify_history(self.CHAT, self._message(from_me=True))

        assert result.record.sender == OWN_USER
        assert result.record.is_from_me is True

    def test_group_participant_is_sender(self, classifier):
        group = JID("120363012345", "g.us")

        result = classifier.classify_history(group, self._message(participant="15553334444:2@s.whatsapp.net"))

        assert result.record.sender == "15553334444"

    def test_missing_timestamp_skipped(self, classifier):
        assert classifier.classify_history(self.CHAT, self._message(timestamp=0)).is_empty
        assert classifier.classify_history(self.CHAT, self._message(timestamp=None)).is_empty

    def test_media_only_skipped(self, classifier):
        message = HistoryMessage(
            key=MessageKey(id="H2"),
            message=MessageContent(image=MediaAttachment(kind=MediaKind.IMAGE)),
            timestamp=1736935200,
        )

        assert classifier.classify_history(self.CHAT, message).is_empty

    def test_none_entries_skipped(self, classifier):
        assert classifier.classify_history(self.CHAT, None).is_empty
        assert classifier.classify_history(self.CHAT, HistoryMessage(key=MessageKey(id="H3"))).is_empty
