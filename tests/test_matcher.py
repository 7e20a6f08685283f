"""Pattern matcher: tests for unifying when-patterns with completed actions.

Tests cover:
    - Literal fields must be equal; symbol fields bind
    - Input fields are optional (a missing one leaves its symbol unbound), output fields and literals are required
    - A symbol shared across patterns must agree
    - Multiple matching combinations give multiple frames; a record is used once per combination
    - Reordering independent patterns does not change the result
"""

from uuid import uuid4

from engine import ActionRecord, WhenPattern, match_when
from frames import NA, Frame, symbols


def rec(concept, action, inp, out, flow="f"):
    return ActionRecord(id=str(uuid4()), concept=concept, action=action, input=inp, output=out, flow=flow)


def _canon(frames, *syms):
    return sorted(tuple(f[s] for s in syms) for f in frames)


def test_literal_and_symbol_fields():
    request, name = symbols("request name")
    pat = WhenPattern("Requesting", "request", {"path": "/HerdGrouping/createHerd", "name": name},
                      {"request": request})
    hit = rec("Requesting", "request", {"path": "/HerdGrouping/createHerd", "name": "north"}, {"request": "r1"})
    miss = rec("Requesting", "request", {"path": "/HerdGrouping/deleteHerd", "name": "north"}, {"request": "r2"})
    frame = pat.match(hit, Frame())
    assert frame[request] == "r1"
    assert frame[name] == "north"
    assert pat.match(miss, Frame()) is None


def test_other_actions_never_match():
    request = symbols("request")
    pat = WhenPattern("Requesting", "request", {}, {"request": request})
    assert pat.match(rec("Requesting", "respond", {}, {"request": "r1"}), Frame()) is None
    assert pat.match(rec("Other", "request", {}, {"request": "r1"}), Frame()) is None


def test_unlisted_input_fields_are_ignored():
    request = symbols("request")
    pat = WhenPattern("Requesting", "request", {"path": "/x"}, {"request": request})
    event = rec("Requesting", "request", {"path": "/x", "token": "T1", "extra": [1, 2]}, {"request": "r1"})
    assert pat.match(event, Frame())[request] == "r1"


def test_inputs_are_optional_but_outputs_and_literals_are_required():
    request, token, user = symbols("request token user")
    with_token = WhenPattern("Requesting", "request", {"path": "/x", "token": token}, {"request": request})
    frame = with_token.match(rec("Requesting", "request", {"path": "/x"}, {"request": "r1"}), Frame())
    assert frame[request] == "r1"
    assert token not in frame
    assert with_token.match(rec("Requesting", "request", {"token": "T1"}, {"request": "r2"}), Frame()) is None
    wants_user = WhenPattern("Auth", "verify", {}, {"user": user})
    assert wants_user.match(rec("Auth", "verify", {"token": "x"}, {"error": "invalid token"}), Frame()) is None
    assert wants_user.match(rec("Auth", "verify", {"token": "x"}, {"user": "alice"}), Frame())[user] == "alice"


def test_missing_input_still_has_to_agree_with_a_bound_symbol():
    request, token = symbols("request token")
    pat = WhenPattern("Requesting", "request", {"token": token}, {"request": request})
    bound_frame = Frame({token: "T1"})
    assert pat.match(rec("Requesting", "request", {}, {"request": "r1"}), bound_frame)[token] == "T1"
    assert pat.match(rec("Requesting", "request", {"token": "T2"}, {"request": "r1"}), bound_frame) is None


def test_empty_output_pattern_matches_any_result_but_na_requires_absence():
    any_result = WhenPattern("Auth", "logout", {}, {})
    clean_result = WhenPattern("Auth", "logout", {}, {"error": NA})
    failed = rec("Auth", "logout", {"token": "x"}, {"error": "invalid token"})
    succeeded = rec("Auth", "logout", {"token": "x"}, {})
    assert any_result.match(failed, Frame()) is not None
    assert clean_result.match(failed, Frame()) is None
    assert clean_result.match(succeeded, Frame()) is not None


def test_incomplete_record_does_not_match():
    pat = WhenPattern("Auth", "verify", {}, {})
    assert pat.match(rec("Auth", "verify", {}, None), Frame()) is None


def test_shared_symbol_must_agree_across_patterns():
    request, token, user = symbols("request token user")
    when = [WhenPattern("Requesting", "request", {"token": token}, {"request": request}),
            WhenPattern("Auth", "verify", {"token": token}, {"user": user})]
    req = rec("Requesting", "request", {"token": "T1"}, {"request": "r1"})
    same = rec("Auth", "verify", {"token": "T1"}, {"user": "alice"})
    other = rec("Auth", "verify", {"token": "T2"}, {"user": "bob"})
    frames = match_when(when, [req, other])
    assert len(frames) == 0
    frames = match_when(when, [req, same, other])
    assert len(frames) == 1
    assert frames[0][token] == "T1"
    assert frames[0][user] == "alice"
    assert len(frames[0]) == 3


def test_repeated_symbol_within_one_pattern_must_agree():
    x = symbols("x")
    pat = WhenPattern("Math", "copy", {"value": x}, {"value": x})
    assert pat.match(rec("Math", "copy", {"value": 1}, {"value": 1}), Frame()) is not None
    assert pat.match(rec("Math", "copy", {"value": 1}, {"value": 2}), Frame()) is None


def test_every_combination_yields_a_frame():
    a, b = symbols("a b")
    when = [WhenPattern("A", "go", {}, {"v": a}), WhenPattern("B", "go", {}, {"v": b})]
    records = [rec("A", "go", {}, {"v": 1}), rec("A", "go", {}, {"v": 2}), rec("B", "go", {}, {"v": "x"})]
    assert _canon(match_when(when, records), a, b) == [(1, "x"), (2, "x")]


def test_one_record_cannot_fill_two_patterns():
    a, b = symbols("a b")
    when = [WhenPattern("A", "go", {}, {"v": a}), WhenPattern("A", "go", {}, {"v": b})]
    assert len(match_when(when, [rec("A", "go", {}, {"v": 1})])) == 0
    two = match_when(when, [rec("A", "go", {}, {"v": 1}), rec("A", "go", {}, {"v": 2})])
    assert _canon(two, a, b) == [(1, 2), (2, 1)]


def test_reordering_independent_patterns_gives_same_frames():
    a, b, c = symbols("a b c")
    pa = WhenPattern("A", "go", {"k": "x"}, {"v": a})
    pb = WhenPattern("B", "go", {}, {"v": b})
    pc = WhenPattern("C", "go", {}, {"v": c})
    records = [rec("A", "go", {"k": "x"}, {"v": 1}), rec("B", "go", {}, {"v": 2}),
               rec("A", "go", {"k": "y"}, {"v": 3}), rec("B", "go", {}, {"v": 4}),
               rec("C", "go", {}, {"v": 5})]
    forward = _canon(match_when([pa, pb, pc], records), a, b, c)
    backward = _canon(match_when([pc, pb, pa], records), a, b, c)
    assert forward == backward == [(1, 2, 5), (1, 4, 5)]


def test_no_records_no_frames():
    a = symbols("a")
    assert len(match_when([WhenPattern("A", "go", {}, {"v": a})], [])) == 0
