import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from pixel_agents import node_registry
from pixel_agents.node_registry import (
    NodeConfigError,
    NodeRegistry,
    UnknownNodeError,
    parse_cluster_config,
)
from pixel_agents.sessions import decode_project_key, encode_project_key


class ParseClusterConfigTests(unittest.TestCase):
    def test_hosts_and_locality(self) -> None:
        nodes = parse_cluster_config(
            {
                "nodes": [
                    {"name": "mac", "host": "localhost"},
                    {"name": "gpu-1", "host": "10.0.0.5"},
                    {"host": "build.lan"},
                    {"name": "alias", "address": "alias.lan", "isLocal": True},
                ]
            }
        )
        self.assertEqual([n.name for n in nodes], ["mac", "gpu-1", "build.lan", "alias"])
        self.assertEqual([n.isLocal for n in nodes], [True, False, False, True])

    def test_duplicates_are_skipped(self) -> None:
        nodes = parse_cluster_config({"nodes": [{"name": "a", "host": "x"}, {"name": "a", "host": "y"}]})
        self.assertEqual(len(nodes), 1)
        self.assertEqual(nodes[0].address, "x")

    def test_invalid_shapes_raise(self) -> None:
        with self.assertRaises(NodeConfigError):
            parse_cluster_config([])
        with self.assertRaises(NodeConfigError):
            parse_cluster_config({"nodes": "x"})
        with self.assertRaises(NodeConfigError):
            parse_cluster_config({"nodes": [{"isLocal": True}]})


class NodeRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.cluster_file = Path(self._tmp.name) / "cluster.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_missing_file_defaults_to_local_node(self) -> None:
        with patch.object(node_registry.socket, "gethostname", return_value="studio.local"):
            registry = NodeRegistry(self.cluster_file)
        nodes = registry.list_nodes()
        self.assertEqual(len(nodes), 1)
        self.assertEqual(nodes[0].name, "studio")
        self.assertTrue(nodes[0].isLocal)

    def test_broken_file_falls_back(self) -> None:
        self.cluster_file.write_text("{not json", encoding="utf-8")
        registry = NodeRegistry(self.cluster_file)
        self.assertEqual(len(registry.list_nodes()), 1)
        self.assertTrue(registry.list_nodes()[0].isLocal)

    def test_require_node(self) -> None:
        self.cluster_file.write_text(
            json.dumps({"nodes": [{"name": "gpu-1", "host": "gpu-1.lan"}, {"name": "mac", "host": "127.0.0.1"}]}),
            encoding="utf-8",
        )
        registry = NodeRegistry(self.cluster_file)
        self.assertEqual(registry.require_node(None).name, "mac")
        self.assertEqual(registry.require_node("gpu-1").address, "gpu-1.lan")
        with self.assertRaises(UnknownNodeError):
            registry.require_node("missing")
        self.assertEqual(registry.describe(), "gpu-1, mac (local)")


class ProjectKeyTests(unittest.TestCase):
    def test_encode_and_decode(self) -> None:
        self.assertEqual(encode_project_key("/Users/dev/app"), "-Users-dev-app")
        self.assertEqual(encode_project_key("C:\\Dev\\app"), "C--Dev-app")
        self.assertEqual(decode_project_key("-Users-dev-app"), "/Users/dev/app")
        self.assertEqual(decode_project_key(""), "")


if __name__ == "__main__":
    unittest.main()
