from __future__ import annotations

import hashlib
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

from crackpool.config import FilesystemClusterConfig
from crackpool.fs_backend import FilesystemBackend
from crackpool.models import CrackJob, HealthState, JobState
from crackpool.worker import WorkerAgent, dictionary_attack

PASSWORD_MD5 = "5f4dcc3b5aa765d61d8327deb882cf99"


class DictionaryAttackTest(unittest.TestCase):
    def test_cracks_known_digests(self) -> None:
        with TemporaryDirectory() as temp_dir:
            wordlist = Path(temp_dir) / "words.txt"
            wordlist.write_bytes(b"123456\r\npassword\nletmein\n")
            sha = hashlib.sha256(b"letmein").hexdigest()
            self.assertEqual(dictionary_attack([PASSWORD_MD5.upper(), "0" * 32], 0, wordlist), {PASSWORD_MD5: "password"})
            self.assertEqual(dictionary_attack([sha], 1400, wordlist), {sha: "letmein"})
            with self.assertRaises(ValueError):
                dictionary_attack([PASSWORD_MD5], 22000, wordlist)


class WorkerAgentTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = TemporaryDirectory()
        self.root = Path(self._temp_dir.name)
        self.wordlist = self.root / "words.txt"
        self.wordlist.write_bytes(b"123456\npassword\n")
        self.backend = FilesystemBackend(
            FilesystemClusterConfig(root=self.root),
            wordlist_path=lambda checksum: str(self.wordlist),
        )

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _job(self, job_id: str) -> CrackJob:
        return CrackJob(
            job_id=job_id,
            hashes=[PASSWORD_MD5],
            hash_type=0,
            wordlist_checksum="a" * 64,
            state=JobState.QUEUED,
            created_at="2025-01-01T00:00:00+00:00",
        )

    def test_heartbeat_registers_worker(self) -> None:
        agent = WorkerAgent(self.root, "gpu-1", address="10.0.0.7", tags=("rtx4090",))
        agent.heartbeat()
        workers = self.backend.discover_workers()
        self.assertEqual([worker.worker_id for worker in workers], ["gpu-1"])
        self.assertEqual(workers[0].health, HealthState.HEALTHY)
        agent.stop()
        self.assertEqual(self.backend.discover_workers(), [])

    def test_runs_assigned_job(self) -> None:
        agent = WorkerAgent(self.root, "gpu-1")
        agent.heartbeat()
        worker = self.backend.discover_workers()[0]
        handle = self.backend.dispatch(self._job("job-1"), worker)

        self.assertEqual(agent.poll_once(), 1)
        report = self.backend.poll(handle)
        assert report is not None
        self.assertEqual(report.state, JobState.COMPLETED)
        self.assertEqual(report.result, {PASSWORD_MD5: "password"})
        # the descriptor was claimed, so nothing runs twice
        self.assertEqual(agent.poll_once(), 0)

    def test_ignores_jobs_for_other_workers(self) -> None:
        other = WorkerAgent(self.root, "gpu-2")
        other.heartbeat()
        handle = self.backend.dispatch(self._job("job-1"), self.backend.discover_workers()[0])
        agent = WorkerAgent(self.root, "gpu-1")
        self.assertEqual(agent.poll_once(), 0)
        self.assertIsNone(self.backend.poll(handle))

    def test_cancelled_before_start(self) -> None:
        calls: list[dict[str, Any]] = []

        def cracker(descriptor: dict[str, Any]) -> dict[str, str]:
            calls.append(descriptor)
            return {}

        agent = WorkerAgent(self.root, "gpu-1", cracker=cracker)
        agent.heartbeat()
        handle = self.backend.dispatch(self._job("job-1"), self.backend.discover_workers()[0])
        self.backend.cancel(handle)

        self.assertEqual(agent.poll_once(), 1)
        self.assertIsNone(self.backend.poll(handle))
        self.assertEqual(calls, [])
        self.assertEqual(self.backend.channel.list_jobs(), [])

    def test_cancelled_while_running_discards_job(self) -> None:
        def cracker(descriptor: dict[str, Any]) -> dict[str, str]:
            self.backend.cancel(handle)
            return {PASSWORD_MD5: "password"}

        agent = WorkerAgent(self.root, "gpu-1", cracker=cracker)
        agent.heartbeat()
        handle = self.backend.dispatch(self._job("job-1"), self.backend.discover_workers()[0])
        self.assertEqual(agent.poll_once(), 1)
        self.assertIsNone(self.backend.poll(handle))
        self.assertEqual(self.backend.channel.list_jobs(), [])

    def test_released_job_is_not_recreated(self) -> None:
        def cracker(descriptor: dict[str, Any]) -> dict[str, str]:
            self.backend.release(handle)
            return {PASSWORD_MD5: "password"}

        agent = WorkerAgent(self.root, "gpu-1", cracker=cracker)
        agent.heartbeat()
        handle = self.backend.dispatch(self._job("job-1"), self.backend.discover_workers()[0])
        self.assertEqual(agent.poll_once(), 1)
        self.assertEqual(self.backend.channel.list_jobs(), [])

    def test_cracker_failure_reports_failed(self) -> None:
        def cracker(descriptor: dict[str, Any]) -> dict[str, str]:
            raise RuntimeError("hashcat exited with status 255")

        agent = WorkerAgent(self.root, "gpu-1", cracker=cracker)
        agent.heartbeat()
        handle = self.backend.dispatch(self._job("job-1"), self.backend.discover_workers()[0])
        agent.poll_once()
        report = self.backend.poll(handle)
        assert report is not None
        self.assertEqual(report.state, JobState.FAILED)
        self.assertEqual(report.reason, "hashcat exited with status 255")


if __name__ == "__main__":
    unittest.main()
