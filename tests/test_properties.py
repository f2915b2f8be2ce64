import logging
import struct

import pytest

from sfsave import (ArrayProperty, ArrayStructInfo, BaseHistory, BoolProperty, ByteProperty, DoubleProperty,
                    EncodeError, FloatProperty, FormatArgument, FormatHistory, Int64Property, IntProperty,
                    MalformedPropertyList, MapProperty, NameProperty, NetworkTrace, NoneHistory, ObjectReference,
                    PropertyFactory, PropertySizeMismatch, SetProperty, StringTableHistory, StrProperty,
                    StructProperty, Text, TextProperty, TransformHistory, UnexpectedEof, UnknownProperty,
                    UnknownPropertyType, UnsupportedTextHistory, WideStr)
from sfsave.properties import read_properties, write_properties
from sfsave.values import read_text, write_text
from builders import NONE, fstring, references, tagged, vector

NO_GUID = b"\x00"
EMPTY_STRUCT_GUID = bytes(16)


def _encode(props):
    data = bytearray()
    write_properties(data, props)
    return bytes(data)


def _decode(data, version=52):
    props, offset = read_properties(data, 0, version)
    assert offset == len(data)
    return props


def test_int_property_from_bytes():
    data = tagged("mCount", "IntProperty", NO_GUID, struct.pack('<i', 7)) + NONE
    props = _decode(data)
    assert props == [IntProperty("mCount", 7)]
    assert props[0].size == 4
    assert str(props[0]) == "IntProperty(name=mCount, value=7)"
    assert _encode(props) == data


def test_empty_list():
    assert _decode(NONE) == []
    assert _encode([]) == NONE


def test_repeated_names_keep_order_and_index():
    data = (tagged("mSlots", "IntProperty", NO_GUID, struct.pack('<i', 1), index=0)
            + tagged("mSlots", "IntProperty", NO_GUID, struct.pack('<i', 2), index=1) + NONE)
    props = _decode(data)
    assert [(p.name, p.index, p.value) for p in props] == [("mSlots", 0, 1), ("mSlots", 1, 2)]


def test_property_guid():
    guid = bytes(range(16))
    data = tagged("mGuarded", "IntProperty", b"\x01" + guid, struct.pack('<i', 1)) + NONE
    props = _decode(data)
    assert props[0].guid == "03020100-0504-0706-0809-0a0b0c0d0e0f"
    assert _encode(props) == data


def test_missing_terminator():
    data = tagged("mCount", "IntProperty", NO_GUID, struct.pack('<i', 7))
    with pytest.raises(MalformedPropertyList):
        read_properties(data, 0, 52)


@pytest.mark.parametrize("tail", [b"\x00\x00\x00\x00", b"\x05\x00"])
def test_list_running_into_trailing_bytes(tail):
    data = tagged("mCount", "IntProperty", NO_GUID, struct.pack('<i', 7)) + tail
    with pytest.raises(MalformedPropertyList) as exc:
        read_properties(data, 0, 52)
    assert exc.value.context["offset"] == len(data) - len(tail)


def test_size_mismatch():
    data = tagged("mCount", "IntProperty", NO_GUID, struct.pack('<i', 7) + b"\x00") + NONE
    with pytest.raises(PropertySizeMismatch) as exc:
        read_properties(data, 0, 52)
    assert exc.value.context["property"] == "mCount"


def test_declared_size_past_end():
    data = fstring("mCount") + fstring("IntProperty") + struct.pack('<ii', 400, 0) + NO_GUID + b"\x00" * 4
    with pytest.raises(UnexpectedEof):
        read_properties(data, 0, 52)


def test_unknown_type_is_kept_raw(caplog):
    data = (tagged("mFuture", "FancyProperty", NO_GUID, b"\x01\x02\x03\x04\x05")
            + tagged("mCount", "IntProperty", NO_GUID, struct.pack('<i', 7)) + NONE)
    with caplog.at_level(logging.WARNING):
        props = _decode(data)
    assert isinstance(props[0], UnknownProperty)
    assert props[0].type_name == "FancyProperty"
    assert props[0].value == b"\x01\x02\x03\x04\x05"
    assert props[1] == IntProperty("mCount", 7)
    assert "FancyProperty" in caplog.text
    assert _encode(props) == data


def test_unknown_type_inside_struct_keeps_decoding():
    inner = (tagged("mFuture", "FancyProperty", NO_GUID, b"\x01\x02\x03")
             + tagged("NumItems", "IntProperty", NO_GUID, struct.pack('<i', 5)) + NONE)
    data = (tagged("mStack", "StructProperty", fstring("InventoryStack") + EMPTY_STRUCT_GUID + NO_GUID, inner)
            + tagged("mCount", "IntProperty", NO_GUID, struct.pack('<i', 7)) + NONE)
    stack, count = _decode(data)
    assert stack.raw is None
    assert isinstance(stack.fields[0], UnknownProperty)
    assert stack.fields[0].value == b"\x01\x02\x03"
    assert stack.get("NumItems") == IntProperty("NumItems", 5)
    assert count == IntProperty("mCount", 7)
    assert _encode([stack, count]) == data


def test_factory_lookup():
    assert PropertyFactory.lookup("IntProperty") is IntProperty
    with pytest.raises(UnknownPropertyType):
        PropertyFactory.lookup("NopeProperty")
    assert PropertyFactory.element_class("StructProperty") is None


def test_bool_value_lives_in_tag():
    data = tagged("mOn", "BoolProperty", b"\x02" + NO_GUID, b"") + NONE
    props = _decode(data)
    assert props == [BoolProperty("mOn", True)]
    assert props[0].size == 0
    assert _encode(props) == tagged("mOn", "BoolProperty", b"\x01" + NO_GUID, b"") + NONE


def test_byte_property():
    raw = tagged("mByte", "ByteProperty", fstring("None") + NO_GUID, b"\x2a")
    named = tagged("mMode", "ByteProperty", fstring("EMode") + NO_GUID, fstring("EMode::Fast"))
    props = _decode(raw + named + NONE)
    assert props[0] == ByteProperty("mByte", 42)
    assert props[1] == ByteProperty("mMode", "EMode::Fast", enum_type="EMode")
    assert _encode(props) == raw + named + NONE


def test_str_properties():
    wide = WideStr("Fabrik")
    props = [StrProperty("mName", "Main"), NameProperty("mTag", "Iron"), StrProperty("mWide", wide)]
    decoded = _decode(_encode(props))
    assert decoded == props
    assert isinstance(decoded[2].value, WideStr)
    assert StrProperty("mName", "hello").size == 10


def test_vector_width_follows_save_version():
    new = _encode([vector("mOffset", 52, 1.0, 2.0, 3.0)])
    old = _encode([vector("mOffset", 42, 1.0, 2.0, 3.0)])
    assert len(new) - len(old) == 12
    assert _decode(new, 52)[0].get("Y") == DoubleProperty("Y", 2.0)
    assert _decode(old, 42)[0].get("Y") == FloatProperty("Y", 2.0)


def test_native_struct_payload_size():
    tag = fstring("Vector") + EMPTY_STRUCT_GUID + NO_GUID
    full = tagged("mOffset", "StructProperty", tag, struct.pack('<ddd', 1, 2, 3)) + NONE
    assert _decode(full, 52)[0].get("Z").value == 3.0
    with pytest.raises(PropertySizeMismatch):
        read_properties(full, 0, 42)
    short = tagged("mOffset", "StructProperty", tag, struct.pack('<dd', 1, 2)) + NONE
    with pytest.raises(UnexpectedEof):
        read_properties(short, 0, 52)


def test_property_list_struct():
    inner = tagged("NumItems", "IntProperty", NO_GUID, struct.pack('<i', 5)) + NONE
    data = tagged("mStack", "StructProperty", fstring("InventoryStack") + EMPTY_STRUCT_GUID + NO_GUID, inner) + NONE
    props = _decode(data)
    assert props[0].struct_type == "InventoryStack"
    assert not props[0].is_native
    assert props[0].get("NumItems") == IntProperty("NumItems", 5)
    assert props[0].raw is None
    assert _encode(props) == data


def test_undecodable_struct_is_kept_raw(caplog):
    payload = b"\x05\x00\x00\x00abcd"
    data = tagged("mIdentity", "StructProperty", fstring("ClientIdentityInfo") + EMPTY_STRUCT_GUID + NO_GUID,
                  payload) + NONE
    with caplog.at_level(logging.WARNING):
        props = _decode(data)
    assert props[0].raw == payload
    assert props[0].value == payload
    assert "ClientIdentityInfo" in caplog.text
    assert _encode(props) == data


def _struct(name, struct_type, payload):
    return tagged(name, "StructProperty", fstring(struct_type) + EMPTY_STRUCT_GUID + NO_GUID, payload) + NONE


def test_frame_range_struct():
    data = _struct("mRange", "FICFrameRange", struct.pack('<qq', 10, 250))
    prop = _decode(data)[0]
    assert prop.is_native
    assert prop.fields == [Int64Property("Begin", 10), Int64Property("End", 250)]
    assert _encode([prop]) == data


def test_inventory_item_with_state():
    state = tagged("mAmmo", "IntProperty", NO_GUID, struct.pack('<i', 12)) + NONE
    payload = (struct.pack('<i', 0) + fstring("/Game/Items/Desc_Rifle.Desc_Rifle_C") + struct.pack('<ii', 1, 0)
               + fstring("/Script/FactoryGame.FGWeaponState") + struct.pack('<i', len(state)) + state)
    data = _struct("mItem", "InventoryItem", payload)
    item = _decode(data)[0]
    assert item.is_native
    assert item.raw is None
    assert item.get("ItemName").value == "/Game/Items/Desc_Rifle.Desc_Rifle_C"
    assert item.get("ItemStateType").value == "/Script/FactoryGame.FGWeaponState"
    assert item.get("ItemState").value == [IntProperty("mAmmo", 12)]
    assert _encode([item]) == data


@pytest.mark.parametrize("extra", [b"", b"\x00\x00\x00\x00"])
def test_inventory_item_without_state(extra):
    payload = struct.pack('<i', 0) + fstring("Desc_Coal") + struct.pack('<i', 0) + extra
    data = _struct("mItem", "InventoryItem", payload)
    item = _decode(data)[0]
    assert item.get("HasItemState").value == 0
    assert item.get("ItemState") is None
    assert (item.get("Trailer") is not None) == bool(extra)
    assert _encode([item]) == data


def test_legacy_inventory_item():
    inner = tagged("NumItems", "IntProperty", NO_GUID, struct.pack('<i', 3))
    data = _struct("mItem", "InventoryItem", struct.pack('<i', 0) + fstring("Desc_Coal") + fstring("") + fstring("")
                   + inner)
    item = _decode(data, version=42)[0]
    assert item.get("Owner").value == ObjectReference()
    assert item.get("Property").value == IntProperty("NumItems", 3)
    assert _encode([item]) == data


def test_broken_inventory_item_is_kept_raw(caplog):
    payload = struct.pack('<i', 0) + fstring("Desc_Coal") + struct.pack('<ii', 1, 0) + fstring("X") + b"\x40\x00"
    data = _struct("mItem", "InventoryItem", payload)
    with caplog.at_level(logging.WARNING):
        item = _decode(data)[0]
    assert item.raw == payload
    assert "InventoryItem" in caplog.text
    assert _encode([item]) == data


def test_network_trace_struct():
    trace = NetworkTrace(ObjectReference("L", "L:P.Computer"), prev=NetworkTrace(ObjectReference("L", "L:P.Cable")),
                         step="Connector")
    payload = (fstring("L") + fstring("L:P.Computer") + struct.pack('<i', 1)
               + fstring("L") + fstring("L:P.Cable") + struct.pack('<ii', 0, 0)
               + struct.pack('<i', 1) + fstring("Connector"))
    data = _struct("mTrace", "FINNetworkTrace", payload)
    prop = _decode(data)[0]
    assert prop.get("Trace").value == trace
    assert _encode([prop]) == data


def test_lua_processor_state_keeps_struct_table():
    table = struct.pack('<ii', 1, 0) + fstring("/Script/CoreUObject.Vector") + struct.pack('<ddd', 1, 2, 3)
    payload = (struct.pack('<i', 0) + references(("L", "L:P.Lamp")) + fstring("thread") + fstring("globals")
               + table)
    data = _struct("mLuaState", "FINLuaProcessorStateStorage", payload)
    state = _decode(data)[0].get("State").value
    assert state.traces == []
    assert state.references == [ObjectReference("L", "L:P.Lamp")]
    assert (state.thread, state.globals) == ("thread", "globals")
    assert state.structs == table
    assert _encode(_decode(data)) == data


def test_native_field_must_be_scalar():
    prop = StructProperty("mOffset", "Vector", [StructProperty("X", "Vector")])
    with pytest.raises(EncodeError):
        _encode([prop])


def test_scalar_arrays():
    props = [
        ArrayProperty("mInts", "IntProperty", [1, -2, 3]),
        ArrayProperty("mNames", "NameProperty", ["A", "", "C"]),
        ArrayProperty("mRefs", "ObjectProperty", [ObjectReference("L", "L:P.A"), ObjectReference()]),
        ArrayProperty("mEmpty", "FloatProperty", []),
    ]
    decoded = _decode(_encode(props))
    assert decoded == props
    assert list(decoded[0]) == [1, -2, 3]
    assert len(decoded[1]) == 3
    assert decoded[2][0].path_name == "L:P.A"


def test_byte_array_is_bytes():
    data = tagged("mBlob", "ArrayProperty", fstring("ByteProperty") + NO_GUID,
                  struct.pack('<i', 3) + b"\x00\x01\xff") + NONE
    props = _decode(data)
    assert props[0].value == b"\x00\x01\xff"
    assert _encode(props) == data


def test_enum_byte_array():
    payload = struct.pack('<i', 2) + fstring("E::A") + fstring("E::B")
    data = tagged("mModes", "ArrayProperty", fstring("ByteProperty") + NO_GUID, payload) + NONE
    props = _decode(data)
    assert props[0].value == ["E::A", "E::B"]
    assert _encode(props) == data


def test_struct_array():
    points = [vector("mPoints", 52, 0.5, 1.5, 2.5), vector("mPoints", 52, -1.0, 0.0, 1.0)]
    prop = ArrayProperty("mPoints", "StructProperty", points, struct_info=ArrayStructInfo("mPoints", "Vector"))
    decoded = _decode(_encode([prop]))
    assert decoded == [prop]
    assert decoded[0].struct_info.struct_type == "Vector"


def test_struct_array_needs_element_tag():
    prop = ArrayProperty("mPoints", "StructProperty", [vector("mPoints", 52, 0.0, 0.0, 0.0)])
    with pytest.raises(EncodeError):
        _encode([prop])


def test_property_list_struct_array():
    stacks = [
        StructProperty("mStacks", "InventoryStack", [IntProperty("NumItems", 1)]),
        StructProperty("mStacks", "InventoryStack", [IntProperty("NumItems", 2), StrProperty("Note", "x")]),
    ]
    prop = ArrayProperty("mStacks", "StructProperty", stacks,
                         struct_info=ArrayStructInfo("mStacks", "InventoryStack"))
    assert _decode(_encode([prop])) == [prop]


def test_unknown_array_inner_type_is_raw():
    payload = struct.pack('<i', 1) + b"\xde\xad"
    data = tagged("mOdd", "ArrayProperty", fstring("FancyProperty") + NO_GUID, payload) + NONE
    props = _decode(data)
    assert props[0].raw == payload
    assert _encode(props) == data


def test_set_and_map():
    props = [
        SetProperty("mSeen", "NameProperty", ["Desc_Coal", "Desc_Ore"]),
        SetProperty("mIds", "UInt32Property", [1, 2, 3], removed=[9]),
        MapProperty("mCounts", "IntProperty", "StrProperty", [(1, "one"), (2, "two")]),
        MapProperty("mOwners", "ObjectProperty", "IntProperty", [(ObjectReference("L", "L:P.A"), 4)]),
    ]
    decoded = _decode(_encode(props))
    assert decoded == props
    assert decoded[1].removed == [9]


def test_struct_map_values():
    entries = [(1, [IntProperty("Amount", 10), StrProperty("Label", "ten")])]
    prop = MapProperty("mLookup", "IntProperty", "StructProperty", entries)
    decoded = _decode(_encode([prop]))
    assert decoded[0].value == entries
    assert decoded[0].raw is None


def test_undecodable_struct_map_is_raw():
    payload = struct.pack('<ii', 0, 1) + struct.pack('<i', 5) + b"\xff\xff\xff\xff"
    data = tagged("mOpaque", "MapProperty", fstring("IntProperty") + fstring("StructProperty") + NO_GUID,
                  payload) + NONE
    props = _decode(data)
    assert props[0].raw == payload
    assert _encode(props) == data


def test_bad_scalar_set_raises():
    payload = struct.pack('<ii', 0, 3) + struct.pack('<i', 1)
    data = tagged("mIds", "SetProperty", fstring("IntProperty") + NO_GUID, payload) + NONE
    with pytest.raises(UnexpectedEof):
        read_properties(data, 0, 52)


def test_foliage_removal_set_holds_float_vectors():
    payload = struct.pack('<ii', 0, 2) + struct.pack('<3f', 1, 2, 3) + struct.pack('<3f', -4, 0.5, 8)
    data = tagged("mRemovalLocations", "SetProperty", fstring("StructProperty") + NO_GUID, payload) + NONE
    props, offset = read_properties(data, 0, 52, owner="/Script/FactoryGame.FGFoilageRemoval")
    assert offset == len(data)
    removal = props[0]
    assert removal.raw is None
    assert removal.struct_type == "Vector3f"
    assert removal.value[1] == [FloatProperty("X", -4.0), FloatProperty("Y", 0.5), FloatProperty("Z", 8.0)]
    assert _encode(props) == data
    # any other owner reads the elements as property lists, which these are not
    assert _decode(data)[0].raw == payload


def test_save_data_map_has_int_vector_keys():
    value = tagged("mLevel", "IntProperty", NO_GUID, struct.pack('<i', 4)) + NONE
    payload = struct.pack('<ii', 0, 1) + struct.pack('<3i', 1, -2, 3) + value
    data = tagged("mSaveData", "MapProperty", fstring("StructProperty") + fstring("StructProperty") + NO_GUID,
                  payload) + NONE
    prop = _decode(data)[0]
    assert prop.key_struct_type == "IntVector"
    [(key, fields)] = prop.value
    assert key == [IntProperty("X", 1), IntProperty("Y", -2), IntProperty("Z", 3)]
    assert fields == [IntProperty("mLevel", 4)]
    assert _encode([prop]) == data


@pytest.mark.parametrize("text", [
    Text(),
    Text(0, NoneHistory("invariant")),
    Text(2, BaseHistory("Factory", "Key", "Constructor")),
    Text(0, FormatHistory(3, Text(0, BaseHistory("", "k", "{Count} items")),
                          [FormatArgument(0, 12, "Count"), FormatArgument(4, Text(0, NoneHistory("x")), "Label")])),
    Text(0, FormatHistory(2, Text(0, NoneHistory("{0}")), [FormatArgument(3, 0.25)])),
    Text(0, TransformHistory(Text(0, BaseHistory("n", "k", "upper me")), 1)),
    Text(0, StringTableHistory("/Game/Tables/Items", "Iron")),
])
def test_text_histories(text):
    data = bytearray()
    write_text(data, text)
    assert read_text(data, 0) == (text, len(data))
    assert _decode(_encode([TextProperty("mLabel", text)]))[0].value == text


def test_text_str():
    assert str(Text(0, BaseHistory("n", "k", "Hello"))) == "Hello"
    assert str(Text(0, StringTableHistory("Table", "Key"))) == "Table:Key"


def test_unsupported_text_history():
    data = struct.pack('<iB', 0, 7)
    with pytest.raises(UnsupportedTextHistory):
        read_text(data, 0)


def test_size_is_recomputed_after_edit():
    prop = ArrayProperty("mInts", "IntProperty", [1])
    before = prop.size
    prop.value.append(2)
    assert prop.size == before + 4
