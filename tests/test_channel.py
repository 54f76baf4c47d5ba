from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from crackpool.channel import FilesystemJobChannel, MemoryJobChannel, validate_id
from crackpool.errors import ChannelError


class ChannelContractMixin:
    def make_channel(self):
        raise NotImplementedError

    def test_publish_is_write_once(self) -> None:
        channel = self.make_channel()
        channel.publish("job-1", "job", {"worker_id": "w1"})
        with self.assertRaises(ChannelError):
            channel.publish("job-1", "job", {"worker_id": "w2"})
        self.assertEqual(channel.read("job-1", "job"), {"worker_id": "w1"})

        channel.publish("job-1", "status", {"state": "running"}, overwrite=True)
        channel.publish("job-1", "status", {"state": "running", "progress": 50}, overwrite=True)
        self.assertEqual(channel.read("job-1", "status")["progress"], 50)

    def test_take_claims_once(self) -> None:
        channel = self.make_channel()
        channel.publish("job-1", "job", {"worker_id": "w1"})
        self.assertEqual(channel.take("job-1", "job"), {"worker_id": "w1"})
        self.assertIsNone(channel.take("job-1", "job"))
        self.assertIsNone(channel.read("job-1", "job"))

    def test_list_and_discard(self) -> None:
        channel = self.make_channel()
        channel.publish("job-b", "job", {})
        channel.publish("job-a", "job", {})
        self.assertEqual(channel.list_jobs(), ["job-a", "job-b"])
        channel.discard("job-a")
        channel.discard("missing")
        self.assertEqual(channel.list_jobs(), ["job-b"])

    def test_rejects_unknown_kind_and_bad_ids(self) -> None:
        channel = self.make_channel()
        with self.assertRaises(ChannelError):
            channel.publish("job-1", "payload", {})
        with self.assertRaises(ValueError):
            channel.publish("../escape", "job", {})


class FilesystemJobChannelTest(ChannelContractMixin, unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = TemporaryDirectory()
        self.root = Path(self._temp_dir.name)

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def make_channel(self) -> FilesystemJobChannel:
        return FilesystemJobChannel(self.root)

    def test_layout_has_no_leftover_temp_files(self) -> None:
        channel = self.make_channel()
        channel.publish("job-1", "job", {"worker_id": "w1"})
        with self.assertRaises(ChannelError):
            channel.publish("job-1", "job", {"worker_id": "w2"})
        files = sorted(path.name for path in (self.root / "jobs" / "job-1").iterdir())
        self.assertEqual(files, ["job.json"])


class MemoryJobChannelTest(ChannelContractMixin, unittest.TestCase):
    def make_channel(self) -> MemoryJobChannel:
        return MemoryJobChannel()


class ValidateIdTest(unittest.TestCase):
    def test_validate_id(self) -> None:
        self.assertEqual(validate_id("abc-123_x.y"), "abc-123_x.y")
        for value in ["", ".hidden", "a/b", "a" * 200]:
            with self.assertRaises(ValueError):
                validate_id(value)


if __name__ == "__main__":
    unittest.main()
