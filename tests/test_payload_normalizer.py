import pytest

from atendente.services.payload_normalizer import (
    FIELD_PATHS,
    INSUFFICIENT_DATA,
    MessageEnvelope,
    first_match,
    normalize_digits,
    normalize_payload,
)

FLAT_PAYLOAD = {
    "id": "m1",
    "sender": "5511999990000",
    "owner": "5511888880000",
    "connectionId": "48",
    "text": "oi",
    "messageType": "text",
    "fromMe": False,
}

PROMP_PAYLOAD = {
    "body": {
        "messageId": "m1",
        "contact": {"number": "5511999990000", "name": "Maria"},
        "owner": "5511888880000",
        "channel": {"id": "48"},
        "content": {"text": "oi", "type": "text"},
        "fromMe": False,
    }
}

UAZAPI_PAYLOAD = {
    "instanceId": "48",
    "msg": {
        "messageid": "m1",
        "chatid": "5511999990000@s.whatsapp.net",
        "owner": "5511888880000",
        "text": "oi",
        "messageType": "text",
        "fromMe": False,
    },
}

EVOLUTION_PAYLOAD = {
    "instanceId": "48",
    "data": {
        "key": {"id": "m1", "remoteJid": "5511999990000@s.whatsapp.net", "fromMe": False},
        "message": {"conversation": "oi"},
        "messageType": "text",
        "owner": "5511888880000",
    },
}


class TestProviderShapes:
    @pytest.mark.parametrize("payload", [PROMP_PAYLOAD, UAZAPI_PAYLOAD, EVOLUTION_PAYLOAD])
    def test_same_logical_message_gives_equal_envelopes(self, payload):
        expected = normalize_payload(FLAT_PAYLOAD, "company-1")
        envelope = normalize_payload(payload, "company-1")

        # sender_name is only exposed by some gateways
        assert envelope.sender_id == expected.sender_id
        assert envelope.external_id == expected.external_id
        assert envelope.owner_id == expected.owner_id
        assert envelope.connection_id == expected.connection_id
        assert envelope.text == expected.text
        assert envelope.message_type == expected.message_type
        assert envelope.is_from_me == expected.is_from_me

    def test_uazapi_and_evolution_envelopes_are_identical(self):
        assert normalize_payload(UAZAPI_PAYLOAD, "company-1") == normalize_payload(EVOLUTION_PAYLOAD, "company-1")

    def test_flat_payload_fields(self):
        envelope = normalize_payload(FLAT_PAYLOAD, "company-1")

        assert envelope == MessageEnvelope(
            sender_id="5511999990000",
            company_id="company-1",
            text="oi",
            external_id="m1",
            owner_id="5511888880000",
            connection_id="48",
            message_type="text",
        )


class TestNormalizePayload:
    def test_array_takes_first_element(self):
        envelope = normalize_payload([FLAT_PAYLOAD, {"sender": "other"}], "company-1")
        assert envelope.external_id == "m1"

    def test_missing_sender_is_insufficient(self):
        assert normalize_payload({"id": "m1", "text": "oi"}, "company-1") is INSUFFICIENT_DATA

    def test_missing_company_is_insufficient(self):
        assert normalize_payload({"id": "m1", "sender": "5511999990000", "text": "oi"}) is INSUFFICIENT_DATA

    def test_company_from_payload_when_no_hint(self):
        envelope = normalize_payload({"sender": "5511999990000", "companyId": 42, "text": "oi"})
        assert envelope.company_id == "42"

    def test_non_object_payload_is_insufficient(self):
        assert normalize_payload("oi", "company-1") is INSUFFICIENT_DATA
        assert normalize_payload([], "company-1") is INSUFFICIENT_DATA

    def test_unmatched_fields_stay_absent(self):
        envelope = normalize_payload({"sender": "5511999990000", "text": "oi"}, "company-1")

        assert envelope.external_id is None
        assert envelope.owner_id is None
        assert envelope.connection_id is None
        assert envelope.message_type is None
        assert envelope.media_payload is None
        assert envelope.is_from_me is False

    def test_group_jid_keeps_suffix(self):
        envelope = normalize_payload({"sender": "120363-123@g.us", "text": "oi"}, "company-1")
        assert envelope.sender_id == "120363-123@g.us"

    def test_status_broadcast_keeps_suffix(self):
        envelope = normalize_payload({"sender": "status@broadcast", "text": "oi"}, "company-1")
        assert envelope.sender_id == "status@broadcast"

    def test_flags_accept_strings(self):
        envelope = normalize_payload(
            {"sender": "5511999990000", "wasSentByApi": "true", "fromMe": "false", "isGroup": 0},
            "company-1",
        )
        assert envelope.sent_by_platform is True
        assert envelope.is_from_me is False
        assert envelope.is_group is False

    def test_nested_sent_by_platform_flag(self):
        envelope = normalize_payload({"msg": {"chatid": "5511999990000", "wasSentByApi": True}}, "company-1")
        assert envelope.sent_by_platform is True

    def test_text_path_skips_non_string_values(self):
        envelope = normalize_payload({"sender": "5511999990000", "text": {"x": 1}, "msg": {"text": "olá"}}, "c")
        assert envelope.text == "olá"

    def test_audio_detection_from_message_type(self):
        envelope = normalize_payload(
            {"sender": "5511999990000", "messageType": "ptt", "media": {"url": "http://x/a.ogg"}},
            "company-1",
        )
        assert envelope.is_audio is True
        assert envelope.media_payload == {"url": "http://x/a.ogg"}

    def test_audio_detection_from_mimetype(self):
        envelope = normalize_payload(
            {"sender": "5511999990000", "media": {"mimetype": "audio/ogg; codecs=opus", "base64": "AAAA"}},
            "company-1",
        )
        assert envelope.is_audio is True


class TestFirstMatch:
    def test_returns_first_non_empty_candidate(self):
        payload = {"messageId": "", "id": "m2"}
        assert first_match(payload, FIELD_PATHS["message_id"]) == "m2"

    def test_false_is_a_value(self):
        assert first_match({"fromMe": False, "key": {"fromMe": True}}, FIELD_PATHS["is_from_me"]) is False

    def test_returns_none_when_nothing_matches(self):
        assert first_match({}, FIELD_PATHS["owner"]) is None


class TestNormalizeDigits:
    def test_strips_everything_but_digits(self):
        assert normalize_digits("+55 (11) 99999-0000") == "5511999990000"

    def test_none(self):
        assert normalize_digits(None) == ""
