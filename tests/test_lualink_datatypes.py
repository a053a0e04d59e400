import pytest

from lualink import (
    CrossContextError, InvalidHandle, LuaTypeError, ValueHandle, ValueKind,
)
from lualink.lualink_datatypes import classify_number, number_to_integer

from conftest import make_context


# --- Literal round trips ---

def test_literal_round_trips():
    assert ValueHandle(True).to_boolean() is True
    assert ValueHandle(False).to_boolean() is False
    assert ValueHandle(5).to_integer() == 5
    assert ValueHandle(2.25).to_number() == 2.25
    assert ValueHandle("x").to_string() == "x"
    assert ValueHandle(b"raw").to_bytes() == b"raw"
    assert ValueHandle().is_nil()


def test_native_function_and_light_userdata_literals():
    def fn():
        return 1
    marker = object()
    f = ValueHandle(fn)
    p = ValueHandle(marker)
    assert f.is_native_function() and f.is_function()
    assert f.to_native_function() is fn
    assert p.is_light_userdata() and p.is_userdata()
    assert p.to_userdata() is marker


def test_runtime_value_without_context_is_rejected(ctx):
    table = ctx.create_table()
    raw = ctx.registry.get(table.ref)
    with pytest.raises(InvalidHandle):
        ValueHandle(raw)
    anchored = ValueHandle(raw, context=ctx)
    assert anchored.is_table()


def test_integer_outside_int64_is_rejected():
    with pytest.raises(OverflowError):
        ValueHandle(2 ** 63)
    with pytest.raises(OverflowError):
        ValueHandle().set_as_integer(-(2 ** 63) - 1)


# --- Numeric classification ---

def test_whole_numbers_classify_as_integers():
    h = ValueHandle(3.0)
    assert h.kind is ValueKind.INTEGER
    assert h.to_integer() == 3
    assert h.is_number()


def test_fractional_numbers_stay_numbers():
    h = ValueHandle(3.5)
    assert h.kind is ValueKind.NUMBER
    assert h.is_number() and not h.is_integer()


@pytest.mark.parametrize("value,expected", [
    (3.5, 4),
    (2.5, 2),
    (-1.5, -2),
    (0.5, 0),
    (3.7, 4),
    (3.2, 3),
    (-2.6, -3),
])
def test_to_integer_rounds_half_to_even(value, expected):
    assert number_to_integer(value) == expected
    assert ValueHandle(value).to_integer() == expected


def test_classify_number_edges():
    assert classify_number(float("inf"))[0] is ValueKind.NUMBER
    assert classify_number(float("nan"))[0] is ValueKind.NUMBER
    assert classify_number(1e300)[0] is ValueKind.NUMBER
    assert classify_number(-0.0) == (ValueKind.INTEGER, 0)
    assert classify_number(7) == (ValueKind.INTEGER, 7)


def test_to_number_widens_integers():
    assert ValueHandle(7).to_number() == 7.0


def test_set_as_number_classifies_once():
    h = ValueHandle()
    h.set_as_number(8.0)
    assert h.is_integer()
    h.set_as_number(8.25)
    assert h.kind is ValueKind.NUMBER


def test_numbers_loaded_from_runtime_are_classified(ctx):
    ctx.do_string("a = 4.0; b = 4.5; c = 9")
    assert ctx.get_global("a").is_integer()
    assert ctx.get_global("b").kind is ValueKind.NUMBER
    assert ctx.get_global("c").to_integer() == 9


# --- Accessor defaults ---

def test_accessors_on_wrong_kind_return_neutral_defaults():
    h = ValueHandle()
    assert h.to_boolean() is False
    assert h.to_number() == 0.0
    assert h.to_integer() == 0
    assert h.to_string() == ""
    assert h.to_bytes() == b""
    assert h.to_native_function() is None
    assert h.to_userdata() is None
    assert h.length() == 0
    assert ValueHandle(1).to_boolean() is False
    assert ValueHandle(True).to_string() == ""


# --- Kinds loaded from the runtime ---

def test_loaded_reference_kinds(ctx):
    ctx.do_string("""
        t = {}
        f = function() end
        co = coroutine.create(function() end)
        s = 'str'
    """)
    assert ctx.get_global("t").is_table()
    assert ctx.get_global("f").kind is ValueKind.FUNCTION
    assert ctx.get_global("co").is_thread()
    s = ctx.get_global("s")
    assert s.kind is ValueKind.STRING and s.is_ref_type()
    assert ctx.get_global("io").table_get("stdout").kind is ValueKind.USERDATA


def test_host_objects_round_trip_through_runtime(ctx):
    marker = object()

    def add(a, b):
        return a + b

    ctx.set_global(marker, "marker")
    ctx.set_global(add, "add")
    back = ctx.get_global("marker")
    assert back.is_light_userdata() and back.to_userdata() is marker
    fn = ctx.get_global("add")
    assert fn.is_native_function() and fn.to_native_function() is add
    ctx.do_string("r = add(2, 3)")
    assert ctx.get_global("r").to_integer() == 5


def test_length(ctx):
    ctx.do_string("t = {1, 2, 3}")
    assert ctx.get_global("t").length() == 3
    assert ctx.create_string("héllo").length() == 6
    assert ValueHandle("abc").length() == 3


# --- Lifetime ---

def test_reference_kinds_anchor_and_release(ctx):
    base = len(ctx.registry)
    s = ctx.create_string("a")
    assert len(ctx.registry) == base + 1
    s.set_as_integer(1)
    assert len(ctx.registry) == base
    assert s.to_integer() == 1
    assert s.context is ctx


def test_copy_duplicates_anchor_but_aliases_value(ctx):
    a = ctx.create_table()
    b = a.copy()
    assert a.ref != b.ref
    a.table_set(1, "x")
    assert b.table_get(1).to_string() == "x"
    base = len(ctx.registry)
    a.release()
    assert len(ctx.registry) == base - 1
    assert b.table_get(1).to_string() == "x"


def test_copy_of_immediate_kind(ctx):
    a = ValueHandle(5, context=ctx)
    b = a.copy()
    b.set_as_integer(6)
    assert a.to_integer() == 5
    assert b.context is ctx


def test_move_leaves_source_nil_without_releasing(ctx):
    h = ctx.create_string("s")
    base = len(ctx.registry)
    moved = h.move()
    assert h.is_nil()
    assert moved.to_string() == "s"
    assert len(ctx.registry) == base


def test_assign_replaces_identity(ctx):
    base = len(ctx.registry)
    h = ValueHandle("literal")
    other = ctx.create_string("bound")
    h.assign(other)
    assert h.kind is ValueKind.STRING
    assert h.context is ctx
    assert len(ctx.registry) == base + 2
    h.assign(h)
    assert h.to_string() == "bound"
    h.assign(3)
    assert h.to_integer() == 3
    assert len(ctx.registry) == base + 1


def test_attach_records_context_once(ctx):
    h = ValueHandle(True)
    assert h.context is None
    h.attach(ctx)
    assert h.context is ctx
    other = make_context()
    try:
        with pytest.raises(CrossContextError):
            h.attach(other)
    finally:
        other.close()


def test_handle_as_context_manager_releases(ctx):
    base = len(ctx.registry)
    with ctx.create_table() as t:
        assert len(ctx.registry) == base + 1
    assert t.is_nil()
    assert len(ctx.registry) == base


# --- Tables ---

def test_table_set_and_get_with_literals(ctx):
    t = ctx.create_table()
    t.table_set("name", "lua")
    t.table_set(1, 10)
    t.table_set(2.0, True)
    assert t.table_get("name").to_string() == "lua"
    assert t.table_get(1).to_integer() == 10
    assert t.table_get(2).to_boolean() is True
    assert t.table_get("missing").is_nil()


def test_table_keys_can_be_any_kind(ctx):
    t = ctx.create_table()
    key = ctx.create_table()
    t.table_set(key, "by table")
    assert t.table_get(key).to_string() == "by table"
    t.table_set(ValueHandle("k"), ValueHandle(1.5))
    assert t.table_get("k").to_number() == 1.5


def test_table_ops_leave_stack_and_registry_balanced(ctx):
    t = ctx.create_table()
    top = ctx.gettop()
    base = len(ctx.registry)
    t.table_set("a", "b")
    t.table_get("a").release()
    assert ctx.gettop() == top
    assert len(ctx.registry) == base


def test_table_ops_require_a_table(ctx):
    s = ctx.create_string("no")
    with pytest.raises(LuaTypeError, match="not a table"):
        s.table_get(1)
    with pytest.raises(TypeError):
        ValueHandle(1).table_set(1, 2)


def test_cross_context_table_get_is_rejected():
    first = make_context()
    second = make_context()
    try:
        table = first.create_table()
        key = second.create_string("k")
        top1, top2 = first.gettop(), second.gettop()
        with pytest.raises(CrossContextError):
            table.table_get(key)
        with pytest.raises(CrossContextError):
            table.table_set("k", key)
        assert first.gettop() == top1
        assert second.gettop() == top2
        with pytest.raises(LuaTypeError):
            table.table_get(key)
    finally:
        first.close()
        second.close()


def test_index_syntax(ctx):
    t = ctx.create_table()
    t["x"] = 5
    t[1] = "one"
    assert t["x"].to_integer() == 5
    assert t[1].to_string() == "one"


def test_items_iterates_pairs(ctx):
    ctx.do_string("t = {a = 1, b = 2}")
    t = ctx.get_global("t")
    seen = {k.to_string(): v.to_integer() for k, v in t.items()}
    assert seen == {"a": 1, "b": 2}
    assert ctx.gettop() == 0


def test_items_on_empty_table(ctx):
    assert list(ctx.create_table().items()) == []


def test_reference_kind_needs_open_context():
    context = make_context()
    t = context.create_table()
    context.close()
    with pytest.raises(InvalidHandle):
        t.length()


# --- Byte strings and foreign runtime values ---

def test_non_utf8_table_slots_and_globals(ctx):
    ctx.do_string("t = {string.char(200)}; raw = string.char(255, 0, 65)")
    slot = ctx.get_global("t").table_get(1)
    assert slot.to_bytes() == b"\xc8"
    assert slot.length() == 1
    raw = ctx.get_global("raw")
    assert raw.to_bytes() == b"\xff\x00A"
    [(key, value)] = list(ctx.get_global("t").items())
    assert key.to_integer() == 1 and value.to_bytes() == b"\xc8"


def test_runtime_value_from_another_context_is_rejected():
    first = make_context()
    second = make_context()
    try:
        table = first.create_table()
        raw = first.registry.get(table.ref)
        anchors = len(second.registry)
        with pytest.raises(CrossContextError):
            ValueHandle(raw, context=second)
        assert len(second.registry) == anchors
        assert second.gettop() == 0
        assert ValueHandle(raw, context=first).is_table()
    finally:
        first.close()
        second.close()


def test_context_free_literal_uses_the_context_encoding():
    latin = make_context(encoding="latin-1")
    try:
        t = latin.create_table()
        t.table_set(1, ValueHandle("é"))
        stored = t.table_get(1)
        assert stored.to_bytes() == b"\xe9"
        assert stored.to_string() == "é"
    finally:
        latin.close()
