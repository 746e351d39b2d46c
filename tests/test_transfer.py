import json

import pytest

from credvault import crypto
from credvault.errors import DecryptionError, InvalidFormatError, VaultLockedError
from credvault.transfer import (
    FORMAT_VERSION,
    ImportMode,
    export_document,
    export_vault,
    import_document,
    merge_items,
    parse_document,
)
from credvault.vault import VaultStore

from .conftest import PASSWORD


@pytest.fixture
def source(blobs):
    store = VaultStore(blobs, "source")
    store.unlock(PASSWORD)
    store.add({"title": "Gmail", "password": "x1"})
    store.add({"title": "Bank", "password": "x2", "tags": ["money"]})
    yield store
    store.lock()


class TestExport:
    def test_document_shape(self, source):
        doc = json.loads(export_vault(source))
        assert doc["version"] == FORMAT_VERSION == "1.0"
        assert isinstance(doc["timestamp"], int)
        assert len(doc["items"]) == 2
        assert all(isinstance(e, str) for e in doc["items"])

    def test_each_item_is_its_own_envelope(self, source):
        doc = json.loads(export_vault(source))
        decrypted = [json.loads(crypto.decrypt(e, PASSWORD)) for e in doc["items"]]
        assert [d["title"] for d in decrypted] == ["Gmail", "Bank"]

    def test_fixed_timestamp_and_password(self, source):
        doc = json.loads(export_document(source, source.items, "export pw", now=1234))
        assert doc["timestamp"] == 1234
        with pytest.raises(DecryptionError):
            crypto.decrypt(doc["items"][0], PASSWORD)
        assert b"Gmail" in crypto.decrypt(doc["items"][0], "export pw")

    def test_locked_store(self, store):
        with pytest.raises(VaultLockedError):
            export_vault(store)


class TestParseDocument:
    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "[]",
            json.dumps({"items": []}),
            json.dumps({"version": "1.0"}),
            json.dumps({"version": 1, "items": []}),
            json.dumps({"version": "1.0", "items": "abc"}),
            json.dumps({"version": "1.0", "items": [1, 2]}),
            json.dumps({"version": "1.0", "items": []}),
            json.dumps({"version": "1.0", "timestamp": "yesterday", "items": []}),
            json.dumps({"version": "2.0", "timestamp": 1, "items": []}),
        ],
    )
    def test_rejects_foreign_shapes(self, text):
        with pytest.raises(InvalidFormatError):
            parse_document(text)

    def test_accepts_export(self, source):
        doc = parse_document(export_vault(source))
        assert doc.version == "1.0"
        assert len(doc.items) == 2


class TestImport:
    def test_replace(self, source, unlocked):
        unlocked.add({"title": "Old", "password": "p"})
        result = import_document(unlocked, export_vault(source), PASSWORD, ImportMode.REPLACE)
        assert [it.title for it in result] == ["Gmail", "Bank"]
        assert list(unlocked.items) == list(source.items)

    def test_merge_keeps_existing_on_id_collision(self, source, unlocked):
        doc = export_vault(source)
        import_document(unlocked, doc, PASSWORD, ImportMode.REPLACE)
        gmail = unlocked.search("gmail")[0]
        edited = unlocked.update(gmail.id, {"password": "changed locally"})
        local = unlocked.add({"title": "Local", "password": "p"})

        result = import_document(unlocked, doc, PASSWORD, ImportMode.MERGE)

        assert [it.title for it in result] == ["Gmail", "Bank", "Local"]
        assert unlocked.get(gmail.id) == edited
        assert unlocked.get(local.id) == local

    def test_merge_appends_new_items(self, source, unlocked):
        mine = unlocked.add({"title": "Mine", "password": "p"})
        result = import_document(unlocked, export_vault(source), PASSWORD, "merge")
        assert [it.title for it in result] == ["Mine", "Gmail", "Bank"]
        assert result[0] == mine

    def test_result_is_persisted_under_session_password(self, source, unlocked):
        doc = export_document(source, source.items, "export pw")
        import_document(unlocked, doc, "export pw", ImportMode.MERGE)
        unlocked.lock()
        assert len(unlocked.unlock(PASSWORD)) == 2

    def test_wrong_password_rejects_whole_import(self, source, unlocked):
        existing = unlocked.add({"title": "Keep", "password": "p"})
        with pytest.raises(DecryptionError):
            import_document(unlocked, export_vault(source), "wrong", ImportMode.REPLACE)
        assert unlocked.items == (existing,)

    def test_one_bad_envelope_rejects_whole_import(self, source, unlocked):
        doc = json.loads(export_vault(source))
        doc["items"].append(crypto.encrypt(b"{}", "other"))
        with pytest.raises(DecryptionError):
            import_document(unlocked, json.dumps(doc), PASSWORD, ImportMode.MERGE)
        assert unlocked.items == ()

    def test_invalid_format(self, unlocked):
        with pytest.raises(InvalidFormatError):
            import_document(unlocked, '{"foo": 1}', PASSWORD)

    def test_duplicate_ids_in_replace(self, source, unlocked):
        doc = json.loads(export_vault(source))
        doc["items"].append(doc["items"][0])
        with pytest.raises(InvalidFormatError):
            import_document(unlocked, json.dumps(doc), PASSWORD, ImportMode.REPLACE)
        assert unlocked.items == ()

    def test_requires_unlocked(self, source, store):
        with pytest.raises(VaultLockedError):
            import_document(store, export_vault(source), PASSWORD)


def test_merge_items_prefers_existing(source):
    a, b = source.items
    replacement = a.model_copy(update={"title": "imported copy"})
    assert merge_items([a], [replacement, b]) == [a, b]
