import struct

import pytest

from sfsave import (ActorHeader, BodyLengthMismatch, ComponentHeader, DanglingOuterReference, EncodeError,
                    FloatProperty, IntProperty, Level, MalformedLevel, MalformedPropertyList, ObjectGraph,
                    ObjectHeader, ObjectReference, SaveObject, SetProperty, TruncatedBody, TruncatedChunk,
                    UnconsumedBytes)
from builders import fstring, make_graph, tagged

VERSIONS = [42, 46, 51, 52]


def _level_bytes(headers, objects_payload, object_count=None, version=42):
    section = bytearray(struct.pack('<i', len(headers)))
    for header in headers:
        header.to_bytes(section, version)
    if object_count is None:
        object_count = len(headers)
    objects = struct.pack('<i', object_count) + objects_payload
    return struct.pack('<q', len(section)) + bytes(section) + struct.pack('<q', len(objects)) + objects


@pytest.mark.parametrize("version", VERSIONS)
def test_graph_roundtrip(version):
    graph = make_graph(version)
    body = graph.to_bytes(version)
    decoded = ObjectGraph.from_bytes(body, version)
    assert decoded == graph
    assert decoded.to_bytes(version) == body


@pytest.mark.parametrize("version", VERSIONS)
def test_version_gated_layout(version):
    decoded = ObjectGraph.from_bytes(make_graph(version).to_bytes(version), version)
    actor = decoded.persistent_level.objects[0]
    assert actor.header.flags == (8 if version >= 52 else 0)
    assert decoded.persistent_level.level_version == (54 if version >= 51 else 0)
    if version >= 46:
        assert [grid.name for grid in decoded.grids] == ["None", "MainGrid"]
        assert decoded.grids[1].levels == [("L1", 1), ("L2", 2)]
    else:
        assert decoded.grids is None


def test_graph_accessors():
    graph = ObjectGraph.from_bytes(make_graph(52).to_bytes(52), 52)
    assert [level.name for level in graph.sublevels] == ["Level_1"]
    assert graph.persistent_level.is_persistent
    assert len(list(graph.objects())) == 4
    assert graph.sublevels[0].trailing_collectables[0].path_name == "Level_1:PersistentLevel.BP_ItemPickup_1"


def test_object_details_survive():
    graph = ObjectGraph.from_bytes(make_graph(52).to_bytes(52), 52)
    actor, component, bare = graph.persistent_level.objects
    assert actor.is_actor
    assert actor.header.position == (100.25, -8.0, 512.0)
    assert actor.components[0].path_name.endswith(".PowerConnection")
    assert actor.get("mCurrentRecipeIndex").value == 3
    assert actor.property_map()["mSlots"].value == 1
    assert component.trailing == b"\x00\x00\x00\x00"
    assert not bare.has_properties
    assert bare.properties == []


def test_outer_resolution():
    graph = make_graph(52)
    level = graph.persistent_level
    actor, component, bare = level.objects
    assert level.resolve_outer(component) is actor
    assert level.resolve_outer(bare) is actor
    assert level.resolve_outer(actor) is None
    graph.check_outer_references()


def test_dangling_outer():
    graph = make_graph(52)
    graph.persistent_level.objects[1].header.outer_path = "Persistent_Level:PersistentLevel.Gone"
    assert graph.persistent_level.resolve_outer(graph.persistent_level.objects[1]) is None
    with pytest.raises(DanglingOuterReference) as exc:
        graph.check_outer_references()
    assert exc.value.context["level_index"] == 1
    assert exc.value.context["object"] == 1


def test_trailing_body_byte():
    body = make_graph(52).to_bytes(52)
    with pytest.raises(BodyLengthMismatch) as exc:
        ObjectGraph.from_bytes(body + b"\x00", 52)
    assert not isinstance(exc.value, TruncatedBody)


@pytest.mark.parametrize("cut", [0, 5, 8, 100, -1])
def test_short_body(cut):
    body = make_graph(52).to_bytes(52)
    with pytest.raises(TruncatedBody) as exc:
        ObjectGraph.from_bytes(body[:cut], 52)
    assert isinstance(exc.value, TruncatedChunk)


@pytest.mark.parametrize("tail", [b"", b"\x00\x00\x00\x00"])
def test_object_without_terminator_reports_position(tail):
    header = ComponentHeader("/Script/X.Comp", ObjectReference("L", "L:P.A.C"), outer_path="L:P.A")
    props = tagged("mCount", "IntProperty", b"\x00", struct.pack('<i', 1)) + tail
    data = _level_bytes([header], struct.pack('<iii', 46, 0, len(props)) + props)
    with pytest.raises(MalformedPropertyList) as exc:
        Level.from_bytes(data, 0, 42, persistent=True)
    assert exc.value.context["object"] == 0
    assert exc.value.context["path"] == "L:P.A.C"


def test_header_and_object_counts_must_match():
    header = ComponentHeader("/Script/X.Comp", ObjectReference("L", "L:P.A.C"))
    data = _level_bytes([header], b"", object_count=2)
    with pytest.raises(MalformedLevel):
        Level.from_bytes(data, 0, 42, persistent=True)


def test_unknown_object_kind():
    section = struct.pack('<ii', 1, 7) + fstring("/Script/X")
    data = struct.pack('<q', len(section)) + section + struct.pack('<qi', 4, 0)
    with pytest.raises(MalformedLevel) as exc:
        Level.from_bytes(data, 0, 42, persistent=True)
    assert exc.value.context["header"] == 0


def test_unread_object_section_bytes():
    header = ComponentHeader("/Script/X.Comp", ObjectReference("L", "L:P.A.C"))
    payload = struct.pack('<iii', 46, 0, 0) + b"\xee"
    with pytest.raises(MalformedLevel):
        Level.from_bytes(_level_bytes([header], payload), 0, 42, persistent=True)


def test_object_body_without_properties():
    header = ActorHeader("/Game/A.A_C", ObjectReference("L", "L:P.A"))
    body = bytearray()
    ObjectReference().to_bytes(body)
    body.extend(struct.pack('<i', 0))
    data = struct.pack('<iii', 46, 0, len(body)) + bytes(body)
    obj, offset = SaveObject.from_bytes(header, data, 0, 52)
    assert offset == len(data)
    assert not obj.has_properties
    out = bytearray()
    obj.to_bytes(out)
    assert bytes(out) == data


def test_opaque_header_extra_is_kept():
    level = Level(name="Level_2", collectables=None, header_extra=b"\x01\x02\x03", trailing_collectables=[])
    data = bytearray()
    level.to_bytes(data, 42)
    decoded, offset = Level.from_bytes(data, 0, 42)
    assert offset == len(data)
    assert decoded == level


def test_collected_objects():
    graph = make_graph(52)
    level_name, lists = graph.collected_objects()
    assert level_name == "Persistent_Level"
    assert lists[0][0].path_name == "Persistent_Level:PersistentLevel.Pod_1"
    assert ObjectGraph(levels=[Level()]).collected_objects() is None


def test_garbage_tail():
    graph = make_graph(52)
    graph.tail = b"\x01\x02"
    body = graph.to_bytes(52)
    decoded = ObjectGraph.from_bytes(body, 52)
    with pytest.raises(UnconsumedBytes):
        decoded.collected_objects()


def test_persistent_level_must_be_last():
    with pytest.raises(EncodeError):
        ObjectGraph(levels=[Level("Level_1")]).to_bytes(52)
    with pytest.raises(EncodeError):
        ObjectGraph(levels=[Level(), Level()]).to_bytes(52)


def test_edited_property_changes_object_size():
    graph = make_graph(52)
    component = graph.persistent_level.objects[1]
    before = len(graph.to_bytes(52))
    component.properties.append(IntProperty("mExtra", 1))
    body = graph.to_bytes(52)
    assert len(body) > before
    assert ObjectGraph.from_bytes(body, 52).persistent_level.objects[1].get("mExtra").value == 1


def test_negative_level_count():
    with pytest.raises(MalformedLevel) as exc:
        ObjectGraph.from_bytes(struct.pack('<qi', 4, -1), 42)
    assert exc.value.context["offset"] == 8


def test_object_header_is_abstract():
    with pytest.raises(TypeError):
        ObjectHeader("/Script/X.Comp", ObjectReference("L", "L:P.A.C"))


def test_set_elements_follow_object_class():
    locations = [[FloatProperty("X", 1.5), FloatProperty("Y", -2.0), FloatProperty("Z", 8.0)]]
    removal = SaveObject(
        header=ActorHeader("/Script/FactoryGame.FGFoilageRemoval", ObjectReference("L", "L:P.FoliageRemoval_1")),
        object_version=46,
        parent=ObjectReference(),
        properties=[SetProperty("mRemovalLocations", "StructProperty", locations, struct_type="Vector3f")],
    )
    data = bytearray()
    removal.to_bytes(data)
    decoded, offset = SaveObject.from_bytes(removal.header, data, 0, 52)
    assert offset == len(data)
    assert decoded == removal
    assert decoded.get("mRemovalLocations").raw is None
