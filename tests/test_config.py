from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from crackpool.config import (
    DebugClusterConfig,
    FilesystemClusterConfig,
    ManagedCloudClusterConfig,
    load_config,
)
from crackpool.errors import ConfigError
from crackpool.models import DuplicatePolicy

BASE_CONFIG = """
paths:
  db: "./crackpool.db"
  log: "./crackpool.log"
  blobs: "./wordlists"
""".strip()


class ConfigTest(unittest.TestCase):
    def _write(self, root: Path, body: str) -> Path:
        config_path = root / "crackpool.yaml"
        config_path.write_text(body, encoding="utf-8")
        return config_path

    def test_defaults(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            config = load_config(self._write(root, BASE_CONFIG), environ={})
            self.assertEqual(config.dispatch.max_attempts, 5)
            self.assertEqual(config.dispatch.poll_interval_seconds, 10)
            self.assertEqual(config.dispatch.worker_lost_seconds, 600.0)
            self.assertEqual(config.store.duplicate_policy, DuplicatePolicy.REJECT)
            self.assertIsInstance(config.cluster, DebugClusterConfig)
            self.assertEqual(config.paths.blobs.resolve(), (root / "wordlists").resolve())

    def test_filesystem_cluster(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            body = BASE_CONFIG + """
store:
  duplicate_policy: return_existing
cluster:
  type: filesystem
  filesystem:
    root: "./shared"
    worker_timeout_seconds: 30
"""
            config = load_config(self._write(root, body), environ={})
            self.assertEqual(config.store.duplicate_policy, DuplicatePolicy.RETURN_EXISTING)
            assert isinstance(config.cluster, FilesystemClusterConfig)
            self.assertEqual(config.cluster.root.resolve(), (root / "shared").resolve())
            self.assertEqual(config.cluster.worker_timeout_seconds, 30)
            self.assertEqual(config.cluster.worker_expiry_seconds, 600)

    def test_environment_selects_cluster(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            body = BASE_CONFIG + """
cluster:
  type: debug
  managed-cloud:
    root: /mnt/efs/cluster
    namespace: crackpool
    service: workers
    queue_url: https://sqs.ca-central-1.amazonaws.com/123/jobs
"""
            config = load_config(self._write(root, body), environ={"CRACKPOOL_CLUSTER_TYPE": "managed-cloud"})
            assert isinstance(config.cluster, ManagedCloudClusterConfig)
            self.assertEqual(config.cluster.namespace, "crackpool")
            self.assertIsNone(config.cluster.state_machine_arn)
            self.assertEqual(config.cluster.discovery_cache_seconds, 5.0)

    def test_invalid_values(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            with self.assertRaises(ConfigError):
                load_config(self._write(root, BASE_CONFIG + "\ncluster:\n  type: kubernetes\n"), environ={})
            with self.assertRaises(ConfigError):
                load_config(self._write(root, BASE_CONFIG + "\nstore:\n  duplicate_policy: merge\n"), environ={})
            with self.assertRaises(ConfigError):
                load_config(self._write(root, BASE_CONFIG + "\ncluster:\n  type: filesystem\n"), environ={})
            with self.assertRaises(ValueError):
                load_config(self._write(root, "paths:\n  db: ./x.db\n"), environ={})


if __name__ == "__main__":
    unittest.main()
