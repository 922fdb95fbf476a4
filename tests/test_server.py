import io
import json
import os
import tempfile
import unittest

from chatsync.models import direct_conversation_id
from chatsync.server import _load_frames, main, simulate


def _lines(buffer):
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


def _view(lines, frame, user_id):
    for line in lines:
        if line["frame"] == frame and line["user_id"] == user_id:
            return line
    raise AssertionError(f"no state for {user_id} at frame {frame}")


class SimulateTests(unittest.TestCase):
    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "join", "user": "a"}]))
        ndjson_buffer = io.StringIO('{"t": "join", "user": "a"}\n\n{"t": "join", "user": "b"}\n')

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "join", "user": "a"}])
        self.assertEqual([f["user"] for f in _load_frames(ndjson_buffer)], ["a", "b"])
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])

    def test_direct_send_and_open(self):
        frames = [
            {"t": "direct", "user": "alice", "name": "Alice", "peer": "bob"},
            {"t": "send", "user": "alice", "peer": "bob", "text": "hi"},
            {"t": "open", "user": "bob", "peer": "alice"},
        ]
        buffer = io.StringIO()
        simulate(frames, buffer)
        lines = _lines(buffer)
        conv_id = direct_conversation_id("alice", "bob")

        self.assertEqual(len(lines), 6)
        before_open = _view(lines, 1, "bob")["conversations"]
        self.assertEqual([(c["conv_id"], c["unread"], c["last_message"]) for c in before_open], [(conv_id, 1, "hi")])
        self.assertNotIn("open", _view(lines, 1, "bob"))

        after_open = _view(lines, 2, "bob")
        self.assertEqual(after_open["conversations"][0]["unread"], 0)
        self.assertEqual(after_open["open"]["conv_id"], conv_id)
        self.assertEqual([m["text"] for m in after_open["open"]["messages"]], ["hi"])
        self.assertEqual(_view(lines, 2, "alice")["conversations"][0]["unread"], 0)

    def test_react_and_pin(self):
        frames = [
            {"t": "send", "user": "alice", "peer": "bob", "text": "lunch?"},
            {"t": "open", "user": "bob", "peer": "alice"},
            {"t": "react", "user": "bob", "peer": "alice", "msg_id": "alice-1", "emoji": "yes"},
            {"t": "pin", "user": "bob", "peer": "alice"},
        ]
        buffer = io.StringIO()
        simulate(frames, buffer)
        lines = _lines(buffer)

        reacted = _view(lines, 2, "bob")["open"]["messages"]
        self.assertEqual([(m["msg_id"], m["reactions"]) for m in reacted], [("alice-1", {"yes": ["bob"]})])
        self.assertTrue(_view(lines, 3, "bob")["conversations"][0]["pinned"])
        self.assertFalse(_view(lines, 3, "alice")["conversations"][0]["pinned"])

    def test_unknown_frame_type_is_rejected(self):
        with self.assertRaises(ValueError):
            simulate([{"t": "teleport", "user": "alice"}], io.StringIO())


class MainTests(unittest.TestCase):
    def test_main_simulates_from_file(self):
        frames = [{"t": "join", "user": "alice"}, {"t": "send", "user": "alice", "peer": "bob", "text": "yo"}]
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "frames.json")
            with open(path, "w", encoding="utf-8") as handle:
                json.dump(frames, handle)
            buffer = io.StringIO()
            exit_code = main(["simulate", "-f", path], output=buffer)

        self.assertEqual(exit_code, 0)
        lines = _lines(buffer)
        self.assertEqual([line["frame"] for line in lines], [0, 1])
        self.assertEqual(lines[-1]["user_id"], "alice")
        self.assertEqual(lines[-1]["conversations"][0]["last_message"], "yo")


if __name__ == "__main__":
    unittest.main()
