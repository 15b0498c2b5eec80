import io
import pytest
import nfsm
from hypothesis import given, settings, strategies as st

NFA = ".s0 -0> s0 -1> s0 -1> (s1);"
ANBN = """
.q0 -[a,_]a> q0;
q0 -_> (q1);
q1 -[b,a]> q1;
"""
PALINDROME = ".q0 -[_]Z> q1 -[a]a> q1 -[b]b> q1 -a> q2 <b- q1; q2 -[a,a]> q2 -[b,b]> q2 -[_,Z]> (q3);"
ANBNCN = """
.s0 -[_]Z,Z> s1;
s1 -[a]a,a> s1;
s1 -_> s2;
s2 -[b,a]> s2;
s2 -[_,Z]> s3;
s3 -[c,_,a]> s3;
s3 -[_,_,Z]> (s4);
"""
ROBOT = ".off <push> forward <collide> backward -push> off;"

def accepts(machine, word):
    return machine.consume(word, reset=True).in_accept_state()

def test_initial_values():
    machine = nfsm.build(ANBN)

    assert machine.state == "q0"
    assert machine.initial == "q0"
    assert machine.accept_states == {"q1"}
    assert machine.stacks == [[]]
    assert machine.input == []
    assert not machine.halted

def test_nfa():
    machine = nfsm.build(NFA)

    assert accepts(machine, "0011")
    assert not accepts(machine, "0000110")
    assert not accepts(machine, "")

@given(st.text(alphabet="01", max_size=12))
def test_nfa_accepts_words_ending_in_one(word):
    machine = nfsm.build(NFA)
    assert accepts(machine, word) == word.endswith("1")

def test_anbn():
    machine = nfsm.build(ANBN)

    assert accepts(machine, "aaabbb")
    assert accepts(machine, "")
    assert not accepts(machine, "aaabbbb")
    assert not accepts(machine, "abb")
    assert not accepts(machine, "ba")

@settings(max_examples=50)
@given(st.integers(min_value=0, max_value=8), st.integers(min_value=0, max_value=8))
def test_anbn_counts(a, b):
    # acceptance only looks at the state and the input, so leftover a's on the stack are fine
    machine = nfsm.build(ANBN)
    assert accepts(machine, "a" * a + "b" * b) == (b <= a)

def test_halting_leaves_input():
    machine = nfsm.build(ANBN).consume("ba")

    assert machine.state == "q0"
    assert machine.input == ["b", "a"]
    assert not machine.in_accept_state()

def test_palindrome():
    machine = nfsm.build(PALINDROME)

    assert accepts(machine, "aabbbaa")
    assert accepts(machine, "a")
    assert not accepts(machine, "abbbaa")

    machine.consume("ab", reset=True)
    assert machine.state == "q3"
    assert machine.input == ["b"]
    assert not machine.in_accept_state()

def test_two_stacks():
    machine = nfsm.build(ANBNCN)

    assert machine.compiled.stack_count == 2
    assert accepts(machine, "aabbcc")
    assert accepts(machine, "")
    assert not accepts(machine, "aabbc")
    assert not accepts(machine, "abcc")
    assert not accepts(machine, "aabcc")

def test_pop_and_push_same_transition():
    machine = nfsm.build(".s0 -[_]$> s1 -[a,$]b> (s2);").consume("a")

    assert machine.state == "s2"
    assert machine.stacks[0] == ["b"]
    assert machine.in_accept_state()

def test_epsilon_chain():
    machine = nfsm.build(".s0 -_> s1 -[_,_]> s2 -[_]> s3 -[_,_]_> (s4);").consume("")

    assert machine.state == "s4"
    assert machine.in_accept_state()

def test_epsilon_cycle_terminates():
    machine = nfsm.build(".s0 -_> s1 -_> s0 -x> (s2);")

    assert accepts(machine, "x")
    assert not accepts(machine, "y")

def test_consume_continues_from_current_state():
    machine = nfsm.build(".s0 -a> s1 -b> (s2);")

    machine.consume("a")
    assert machine.state == "s1"
    assert machine.consume("b").in_accept_state()

@given(st.text(alphabet="ab", max_size=10))
def test_reset_flag_matches_reset_call(word):
    first = nfsm.build(ANBN)
    second = nfsm.build(ANBN)
    first.consume("aab")
    second.consume("aab")

    first.consume(word, reset=True)
    second.reset().consume(word)

    assert (first.state, first.stacks, first.input) == (second.state, second.stacks, second.input)

    fresh = nfsm.build(ANBN).consume(word)
    assert (first.state, first.stacks, first.input, first.halted) == (fresh.state, fresh.stacks, fresh.input, fresh.halted)

def test_explicit_transition_wins_over_wildcard():
    machine = nfsm.build(".s0 -f> (s1) -g> (s2); * -f> s3;")

    assert machine.consume("f").state == "s1"
    assert machine.consume("f", reset=True).in_accept_state()
    machine.reset().dispatch("f")
    assert machine.state == "s1"
    assert machine.consume("f").state == "s3"

def test_explicit_stack_transition_wins_over_wildcard():
    machine = nfsm.build(".s0 -[_]a> s1 -[f,a]> (s2); * -f> s3;")

    assert accepts(machine, "f")
    assert machine.state == "s2"

def test_default_step_limit_stops_pushing_loop():
    machine = nfsm.build(".s0 -[_]a> s0 -x> (s1);")

    assert machine.max_steps == nfsm.ProgramOption.MAX_SEARCH_STEPS.default > 0
    assert not accepts(machine, "y")
    assert machine.state == "s0"
    assert machine.input == ["y"]

def test_max_steps():
    machine = nfsm.build(".s0 -[_]a> s0 -x> (s1);", max_steps=50).consume("y")

    assert machine.state == "s0"
    assert machine.input == ["y"]

def test_without_pruning():
    nfsm.ProgramData._flags[nfsm.ProgramFlag.PRUNE_REVISITED] = False
    try:
        machine = nfsm.build(NFA)
        assert accepts(machine, "0011")
        assert not accepts(machine, "0110")
    finally:
        nfsm.ProgramData._reset_flags()

def test_robot_dispatch():
    machine = nfsm.build(ROBOT)

    machine.dispatch("push")
    assert machine.state == "forward"
    machine.dispatch("collide")
    assert machine.state == "backward"
    machine.dispatch("push")
    assert machine.state == "off"

def test_dispatch_does_not_consume_input():
    machine = nfsm.build(".s0 -a> s1 -_> s0;")
    machine.input = ["z"]
    machine.halted = True

    machine.dispatch("a")
    assert machine.state == "s1"
    assert machine.input == ["z"]
    assert not machine.halted

def test_dispatch_permissive():
    machine = nfsm.build(ROBOT, strict=False)

    machine.dispatch("collide")
    assert machine.state == "off"
    machine.dispatch("nonsense")
    assert machine.state == "off"

def test_dispatch_strict():
    machine = nfsm.build(ROBOT, strict=True)

    with pytest.raises(nfsm.InvalidActionError, match="Invalid action 'collide' from state 'off'"):
        machine.dispatch("collide")
    with pytest.raises(nfsm.InvalidActionError, match="Unknown action 'nonsense'"):
        machine.dispatch("nonsense")
    assert machine.state == "off"

def test_strict_flag_default():
    nfsm.ProgramData._flags[nfsm.ProgramFlag.STRICT_ACTIONS] = True
    try:
        machine = nfsm.build(ROBOT)
    finally:
        nfsm.ProgramData._reset_flags()

    assert machine.strict
    with pytest.raises(nfsm.InvalidActionError):
        machine.dispatch("collide")

def test_dispatch_with_stacks():
    machine = nfsm.build(".s0 -[f,_]a> s0 -[g,a]> s1;", strict=True)

    with pytest.raises(nfsm.InvalidActionError):
        machine.dispatch("g")
    machine.dispatch("f")
    assert machine.stacks == [["a"]]
    machine.dispatch("g")
    assert machine.state == "s1"
    assert machine.stacks == [[]]

def test_possible_transitions():
    machine = nfsm.build(".s0 -a> s1; s0 -_> s2; s0 -[b,x]> s3;")

    assert [x.action.target for x in machine.possible_transitions("s0", (None,), "a")] == ["s1", "s2"]
    assert [x.action.target for x in machine.possible_transitions("s0", (None,), "b")] == ["s2"]
    assert [x.action.target for x in machine.possible_transitions("s0", ("x",), "b")] == ["s2", "s3"]
    assert machine.possible_transitions("s1", (None,), "a") == []

def test_subscribe_dispatch():
    machine = nfsm.build(ROBOT)
    seen = []
    unsubscribe = machine.subscribe(lambda *args: seen.append(args))

    machine.dispatch("push")
    machine.dispatch("collide")
    unsubscribe()
    machine.dispatch("push")

    assert seen == [("forward", "push", ()), ("backward", "collide", ())]

def test_subscribe_consume_replays_accepted_run():
    machine = nfsm.build(NFA)
    seen = []
    machine.subscribe(lambda *args: seen.append(args))

    machine.consume("0011")

    assert [x[1] for x in seen] == ["0", "0", "1", "1"]
    assert [x[0] for x in seen] == ["s0", "s0", "s0", "s1"]
    assert all(x[2] == () for x in seen)

def test_subscribe_sees_stacks():
    machine = nfsm.build(ANBN)
    seen = []
    machine.subscribe(lambda *args: seen.append(args))

    machine.consume("ab")

    assert seen == [("q0", "a", (("a",),)), ("q1", "_", (("a",),)), ("q1", "b", ((),))]

def test_snapshot_clone_is_independent():
    snapshot = nfsm.Snapshot("s0", [["a"]], ["x", "y"])
    clone = snapshot.clone()
    clone.stacks[0].append("b")
    clone.input.clear()

    assert snapshot.stacks == [["a"]]
    assert snapshot.input == ["x", "y"]
    assert snapshot.workload == 3
    assert clone.workload == 2

@given(
    st.sampled_from(["a", "b", "_"]),
    st.lists(st.sampled_from(["x", "y", "_", None]), max_size=4),
    st.integers(min_value=0, max_value=6),
)
def test_filter_padding_keeps_key(label, reads, count):
    tf = nfsm.TransitionFilter(label, tuple(reads))
    padded = tf.padded(count)

    assert padded.key() == tf.key()
    assert len(padded.reads) == max(count, len(reads))

def test_table_text_dump():
    out = io.StringIO()
    nfsm.debug_dump_table_text(nfsm.compile_rules(ANBN), out)

    assert out.getvalue().splitlines() == [
        "initial: q0",
        "accept: q1",
        "stacks: 1",
        "q0:",
        "  [a,_] push 0:a -> q0",
        "  _ -> q1",
        "q1:",
        "  [b,a] -> q1",
    ]
