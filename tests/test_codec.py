import json

import pytest

from credvault import codec
from credvault.errors import MalformedRecordError
from credvault.models import VaultItem


@pytest.fixture
def item():
    return VaultItem(
        id="6f1c1f7e-3c35-4a53-9f43-1c2b0c2f1d10",
        title="Gmail",
        username="me@gmail.com",
        password="x1",
        url="https://mail.google.com",
        notes="personal ✉",
        tags=["mail", "personal"],
        created_at=1700000000000,
        updated_at=1700000005000,
    )


class TestRecordCodec:
    def test_round_trip(self, item):
        assert codec.decode(codec.encode(item)) == item

    def test_encodes_camel_case_keys(self, item):
        obj = json.loads(codec.encode(item))
        assert obj["createdAt"] == 1700000000000
        assert obj["updatedAt"] == 1700000005000
        assert "created_at" not in obj

    def test_optional_fields_default(self):
        raw = json.dumps({"id": "a", "title": "t", "password": "p", "createdAt": 1, "updatedAt": 1}).encode()
        decoded = codec.decode(raw)
        assert decoded.username == "" and decoded.url == "" and decoded.notes == ""
        assert decoded.tags == []

    @pytest.mark.parametrize("missing", ["id", "title", "password"])
    def test_missing_required_field(self, item, missing):
        obj = json.loads(codec.encode(item))
        del obj[missing]
        with pytest.raises(MalformedRecordError) as exc:
            codec.decode(json.dumps(obj).encode())
        assert missing in str(exc.value)

    @pytest.mark.parametrize("raw", [b"not json", b"\xff\xfe", b"[1, 2]", b"null", b'"string"'])
    def test_not_a_record(self, raw):
        with pytest.raises(MalformedRecordError):
            codec.decode(raw)

    def test_tags_deduplicated_in_order(self):
        raw = json.dumps(
            {"id": "a", "title": "t", "password": "p", "tags": ["b", "a", "b"], "createdAt": 1, "updatedAt": 1}
        ).encode()
        assert codec.decode(raw).tags == ["b", "a"]
