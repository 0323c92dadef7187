"""Tests for payload readers and the orjson frame encoder."""

import pytest

from clusterform.core.payloads import read_int, read_list, read_mapping, read_str
from clusterform.core.serialization import JsonSerializer
from clusterform.topology.types import NodeRole, NodeState, Topology


class TestReaders:
    def test_read_str(self):
        assert read_str({"node_id": "a"}, "node_id") == "a"
        assert read_str({}, "node_id", "fallback") == "fallback"
        with pytest.raises(ValueError, match="node_id"):
            read_str({"node_id": ""}, "node_id")
        with pytest.raises(ValueError):
            read_str({"node_id": 7}, "node_id")

    def test_read_int(self):
        assert read_int({"epoch": 4}, "epoch") == 4
        assert read_int({"epoch": 4.0}, "epoch") == 4
        assert read_int({}, "epoch", 0) == 0
        with pytest.raises(ValueError, match="required"):
            read_int({}, "epoch")
        with pytest.raises(ValueError):
            read_int({"epoch": True}, "epoch")
        with pytest.raises(ValueError):
            read_int({"epoch": "4"}, "epoch")
        with pytest.raises(ValueError):
            read_int({"epoch": 4.5}, "epoch")

    def test_read_list_and_mapping(self):
        assert read_list({"peers": ["a", "b"]}, "peers", str) == ("a", "b")
        assert read_list({}, "peers", str) == ()
        assert read_mapping({}, "slot_map") == {}
        with pytest.raises(ValueError, match="peers"):
            read_list({"peers": "a"}, "peers", str)
        with pytest.raises(ValueError, match="slot_map"):
            read_mapping({"slot_map": []}, "slot_map")

    def test_bad_node_state_frame(self):
        with pytest.raises(ValueError, match="epoch"):
            NodeState.from_dict({"node_id": "a", "epoch": "three"})

    def test_bad_topology_frame(self):
        with pytest.raises(ValueError, match="slot_map"):
            Topology.from_dict({"epoch": 1, "total_slots": 4, "slot_map": ["a"]})


class TestJsonSerializer:
    def test_encodes_enums_and_sets(self):
        serializer = JsonSerializer()
        frame = {"role": NodeRole.MASTER, "peers": {"b", "a"}}

        assert serializer.deserialize(serializer.serialize(frame)) == {
            "role": "master",
            "peers": ["a", "b"],
        }

    def test_canonical_encoding_sorts_keys(self):
        serializer = JsonSerializer()
        assert serializer.serialize_canonical({"b": 1, "a": 2}) == b'{"a":2,"b":1}'

    def test_rejects_unknown_objects(self):
        with pytest.raises(TypeError):
            JsonSerializer().serialize({"value": object()})
