"""
Tests for subject persistence
"""

import json
import logging
from unittest.mock import Mock

import pytest

from petwatch.exceptions import StorageError
from petwatch.models import ObservationOrigin
from petwatch.store import (
    SUBJECTS_KEY,
    JsonFileKeyValueStore,
    MemoryKeyValueStore,
    SubjectStore,
)


@pytest.fixture
def backend():
    return MemoryKeyValueStore()


@pytest.fixture
def subjects(backend):
    return SubjectStore(backend)


class TestSubjectStore:
    """CRUD and observation history"""

    def test_empty_store(self, subjects):
        assert subjects.list() == []
        assert subjects.get("anything") is None

    def test_create_persists_under_fixed_key(self, subjects, backend):
        rex = subjects.create("Rex", "Dog", "Labrador")

        raw = json.loads(backend.data[SUBJECTS_KEY])
        assert raw[0]["id"] == rex.id
        assert raw[0]["name"] == "Rex"
        assert subjects.get(rex.id).sub_category == "Labrador"

    def test_create_gives_unique_ids(self, subjects):
        a = subjects.create("Rex")
        b = subjects.create("Rex")

        assert a.id != b.id
        assert len(subjects.list()) == 2

    def test_append_newest_first(self, subjects):
        rex = subjects.create("Rex", "Dog")

        subjects.append(rex.id, "Identified as Dog", ObservationOrigin.IDENTIFICATION)
        subjects.append(rex.id, "Rex is napping.", ObservationOrigin.LIVE_INTERPRETATION)
        saved = subjects.append(
            rex.id, "Rex chased a ball.", ObservationOrigin.RECORDED_UPLOAD, source_file="park.mp4"
        )

        assert [o.text for o in saved.observations] == [
            "Rex chased a ball.",
            "Rex is napping.",
            "Identified as Dog",
        ]
        assert saved.observations[0].source_file == "park.mp4"
        assert subjects.get(rex.id).observations == saved.observations

    def test_append_to_missing_subject(self, subjects):
        assert subjects.append("gone", "text", ObservationOrigin.LIVE_INTERPRETATION) is None
        assert subjects.list() == []

    def test_update(self, subjects):
        rex = subjects.create("Rex", "Dog")

        updated = subjects.update(rex.id, name="Rex II", sub_category="Beagle")

        assert updated.name == "Rex II"
        assert subjects.get(rex.id).sub_category == "Beagle"
        assert subjects.get(rex.id).category == "Dog"

    def test_update_rejects_unknown_fields(self, subjects):
        rex = subjects.create("Rex")

        with pytest.raises(ValueError):
            subjects.update(rex.id, observations=[])

    def test_update_missing(self, subjects):
        assert subjects.update("gone", name="x") is None

    def test_delete(self, subjects):
        rex = subjects.create("Rex")
        mittens = subjects.create("Mittens")

        assert subjects.delete(rex.id)
        assert not subjects.delete(rex.id)
        assert [s.id for s in subjects.list()] == [mittens.id]

    def test_corrupt_data_loads_empty(self, backend, caplog):
        backend.data[SUBJECTS_KEY] = "{not json"
        subjects = SubjectStore(backend)

        with caplog.at_level(logging.WARNING, logger="petwatch.store"):
            assert subjects.list() == []
        assert "corrupt" in caplog.text

    def test_wrong_shape_loads_empty(self, backend):
        backend.data[SUBJECTS_KEY] = json.dumps([{"no_name": True}])

        assert SubjectStore(backend).list() == []

    def test_write_failure_raises_storage_error(self):
        backend = Mock()
        backend.get.return_value = None
        backend.set.side_effect = OSError("read-only file system")

        with pytest.raises(StorageError):
            SubjectStore(backend).create("Rex")

    def test_observations_are_immutable(self, subjects):
        rex = subjects.create("Rex")
        saved = subjects.append(rex.id, "text", ObservationOrigin.LIVE_INTERPRETATION)

        with pytest.raises(Exception):
            saved.observations[0].text = "changed"


class TestJsonFileKeyValueStore:
    """File-backed key-value medium"""

    def test_roundtrip_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "store.json"
        rex = SubjectStore(JsonFileKeyValueStore(path)).create("Rex", "Dog")

        reopened = SubjectStore(JsonFileKeyValueStore(path))
        assert reopened.get(rex.id).name == "Rex"

    def test_keeps_other_keys(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text(json.dumps({"other": "value"}))

        JsonFileKeyValueStore(path).set(SUBJECTS_KEY, "[]")

        data = json.loads(path.read_text())
        assert data == {"other": "value", SUBJECTS_KEY: "[]"}

    def test_missing_file(self, tmp_path):
        assert JsonFileKeyValueStore(tmp_path / "none.json").get(SUBJECTS_KEY) is None

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("garbage")

        assert JsonFileKeyValueStore(path).get(SUBJECTS_KEY) is None

    def test_non_dict_file(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2, 3]")

        assert JsonFileKeyValueStore(path).get(SUBJECTS_KEY) is None
