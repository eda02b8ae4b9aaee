"""Tests for the durable state store and the typed document."""

import json

import pytest

from relay_supervisor.document import (
    RunState,
    SlotAddress,
    SlotName,
    StateDocument,
    UserIntent,
    decode_document,
)
from relay_supervisor.errors import DocumentDecodeError, StoreIOError
from relay_supervisor.store import StateStore

VALID = {
    "addresses": {
        "repeatToLocalNginx": {"source": "rtsp://camera.local/stream", "output": ""},
        "repeatToOptionalOutput": {"source": "", "output": "rtmp://a.rtmp.youtube.com/live2/key"},
    },
    "states": {
        "repeatToLocalNginx": {"type": "started", "message": ""},
        "repeatToOptionalOutput": {"type": "error", "message": "ffmpeg exited with code 1"},
    },
    "userActions": {"repeatToLocalNginx": "start", "repeatToOptionalOutput": "stop"},
    "progresses": {
        "repeatToLocalNginx": {"frame": 250, "fps": 25.0, "time": "00:00:10.00", "speed": 1.0},
        "repeatToOptionalOutput": {},
    },
}


def test_missing_file_yields_default_and_writes_it(tmp_path):
    store = StateStore(tmp_path / "state.json")

    document = store.load()

    assert document == StateDocument.default()
    on_disk = json.loads((tmp_path / "state.json").read_text())
    assert on_disk["userActions"] == {"repeatToLocalNginx": "stop", "repeatToOptionalOutput": "stop"}
    assert on_disk["states"]["repeatToLocalNginx"]["type"] == "stopped"
    assert on_disk["addresses"]["repeatToOptionalOutput"] == {"source": "", "output": ""}
    assert on_disk["progresses"] == {"repeatToLocalNginx": {}, "repeatToOptionalOutput": {}}


@pytest.mark.parametrize(
    "content",
    [
        b"{not json",
        b"[]",
        json.dumps({"addresses": {}}).encode(),
        json.dumps({**VALID, "userActions": {"repeatToLocalNginx": "start"}}).encode(),
        json.dumps({**VALID, "userActions": {"repeatToLocalNginx": "go", "repeatToOptionalOutput": "stop"}}).encode(),
        json.dumps({**VALID, "states": {"repeatToLocalNginx": {"type": "flying"}, "repeatToOptionalOutput": {"type": "stopped"}}}).encode(),
    ],
)
def test_invalid_document_is_replaced_by_default(tmp_path, content):
    path = tmp_path / "state.json"
    path.write_bytes(content)

    document = StateStore(path).load()

    assert document == StateDocument.default()
    assert decode_document(path.read_bytes()) == StateDocument.default()


def test_valid_document_is_decoded(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps(VALID))

    document = StateStore(path).load()

    assert document.addresses[SlotName.LOCAL] == SlotAddress(source="rtsp://camera.local/stream")
    assert document.states[SlotName.LOCAL].type is RunState.STARTED
    assert document.states[SlotName.OUTPUT].message == "ffmpeg exited with code 1"
    assert document.user_actions[SlotName.LOCAL] is UserIntent.START
    assert document.progresses[SlotName.LOCAL]["frame"] == 250
    assert isinstance(document.progresses[SlotName.LOCAL]["frame"], int)
    assert isinstance(document.progresses[SlotName.LOCAL]["fps"], float)


def test_save_load_round_trip_is_byte_stable(tmp_path):
    store = StateStore(tmp_path / "state.json")
    store.save(decode_document(json.dumps(VALID)))
    first = store.path.read_bytes()

    store.save(store.load())

    assert store.path.read_bytes() == first
    assert json.loads(first) == VALID


def test_decode_error_names_the_problem():
    with pytest.raises(DocumentDecodeError, match="missing slots"):
        decode_document(json.dumps({**VALID, "progresses": {"repeatToLocalNginx": {}}}))


def test_save_leaves_no_temporary_files(tmp_path):
    store = StateStore(tmp_path / "state.json")
    store.save(StateDocument.default())
    store.save(StateDocument.default())

    assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


def test_save_failure_raises_store_io_error(tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")

    with pytest.raises(StoreIOError):
        StateStore(blocker / "state.json").save(StateDocument.default())

    assert blocker.read_text() == ""
