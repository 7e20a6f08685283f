"""Frames: tests for symbols, immutable bindings and the filter/map primitives.

Tests cover:
    - Symbols are identity-compared and scoped to whoever created them
    - Frames never change in place; bind/extend return new frames
    - Reading an unbound symbol faults (and is not a KeyError)
    - substitute() resolves nested templates and refuses NA
    - map() must keep every existing binding
"""

import copy

import pytest

from errors import DroppedBindingError, InapplicableSymbolError, UnboundSymbolError
from frames import NA, Frame, Frames, Symbol, applicable, inapplicable, substitute, symbols


def test_same_name_symbols_from_different_rules_do_not_collide():
    a = Symbol("user")
    b = Symbol("user")
    assert a != b
    frame = Frame({a: "alice"})
    assert a in frame
    assert b not in frame


def test_symbols_helper_returns_fresh_symbols():
    request, user = symbols("request user")
    assert (request.name, user.name) == ("request", "user")
    single = symbols("token")
    assert isinstance(single, Symbol)
    assert symbols("token") is not single


def test_bind_returns_new_frame_and_leaves_original_alone():
    user, herd = symbols("user herd")
    base = Frame({user: "alice"})
    extended = base.bind(herd, "north-field")
    assert herd not in base
    assert extended[herd] == "north-field"
    assert extended[user] == "alice"


def test_frame_cannot_be_mutated_through_its_mapping():
    user = Symbol("user")
    frame = Frame({user: "alice"})
    with pytest.raises(TypeError):
        frame._vars[user] = "mallory"


def test_unbound_access_raises_distinguishable_fault():
    user, other = symbols("user other")
    frame = Frame({user: "alice"})
    with pytest.raises(UnboundSymbolError) as exc:
        frame[other]
    assert not isinstance(exc.value, KeyError)
    assert exc.value.symbol is other
    with pytest.raises(UnboundSymbolError):
        frame.get(other)


def test_try_get_is_the_explicit_default():
    user = Symbol("user")
    assert Frame().try_get(user, "nobody") == "nobody"


def test_frame_equality_is_by_bindings():
    user = Symbol("user")
    assert Frame({user: "alice"}) == Frame({user: "alice"})
    assert Frame({user: "alice"}) != Frame({user: "bob"})


def test_substitute_resolves_nested_templates():
    request, error = symbols("request error")
    frame = Frame({request: "r1", error: "boom"})
    out = substitute({"request": request, "body": {"error": error, "codes": [error, 1]}, "n": 3}, frame)
    assert out == {"request": "r1", "body": {"error": "boom", "codes": ["boom", 1]}, "n": 3}


def test_substitute_refuses_unbound_and_na():
    user, error = symbols("user error")
    with pytest.raises(UnboundSymbolError):
        substitute({"user": user}, Frame())
    with pytest.raises(InapplicableSymbolError):
        substitute({"error": error}, Frame({error: NA}))


def test_na_is_a_falsy_singleton_that_survives_copies():
    assert not NA
    assert repr(NA) == "NA"
    assert copy.deepcopy(NA) is NA
    assert copy.copy(NA) is NA


def test_filter_keeps_matching_frames():
    user = Symbol("user")
    frames = Frames([Frame({user: "alice"}), Frame({user: NA})])
    assert frames.filter(applicable(user)) == Frames([Frame({user: "alice"})])
    assert frames.filter(inapplicable(user)) == Frames([Frame({user: NA})])


def test_filter_faults_on_unbound_instead_of_treating_it_as_false():
    user, error = symbols("user error")
    frames = Frames([Frame({user: "alice"})])
    with pytest.raises(UnboundSymbolError):
        frames.filter(applicable(error))


def test_map_produces_one_frame_per_input():
    n, doubled = symbols("n doubled")
    frames = Frames([Frame({n: 1}), Frame({n: 2})])
    out = frames.map(lambda f: {**dict(f.items()), doubled: f[n] * 2})
    assert [f[doubled] for f in out] == [2, 4]
    assert [f[n] for f in out] == [1, 2]


def test_map_may_overwrite_but_not_drop():
    n, m = symbols("n m")
    frames = Frames([Frame({n: 1, m: 2})])
    assert frames.map(lambda f: {n: 10, m: f[m]})[0][n] == 10
    with pytest.raises(DroppedBindingError) as exc:
        frames.map(lambda f: {n: f[n]})
    assert exc.value.missing == [m]


def test_empty_frames_are_falsy():
    assert not Frames()
    assert len(Frames([Frame()])) == 1
