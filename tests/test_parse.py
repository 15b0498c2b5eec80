import pytest
import nfsm

def parse(src):
    return nfsm.ParseCtx(nfsm.parser.parse(src)).parse()

def test_plain_chain():
    stmt, = parse(".s0 -f> s1 <g- (s2);")

    s0, f, s1, g, s2 = stmt.tokens
    assert (s0.name, s0.is_initial, s0.is_accepting) == ("s0", True, False)
    assert (s2.name, s2.is_initial, s2.is_accepting) == ("s2", False, True)
    assert f.label == "f" and f.direction == nfsm.Direction.RIGHT
    assert g.label == "g" and g.direction == nfsm.Direction.LEFT
    assert not f.stack_ops

def test_directions():
    stmt, = parse("a -f> b <g- c <h> d;")

    assert [x.direction for x in stmt.tokens if isinstance(x, nfsm.TransitionToken)] == [
        nfsm.Direction.RIGHT, nfsm.Direction.LEFT, nfsm.Direction.BOTH
    ]

def test_initial_accepting_state():
    stmt, = parse(".(s0) -f> s0;")
    assert stmt.tokens[0].is_initial
    assert stmt.tokens[0].is_accepting

def test_stack_ops():
    stmt, = parse(".q0 -[a,_]a> q0 -[b,a]> q1 -[c,x:y,:z]> q2 -[_]Z,_,W> q3;")
    transitions = [x for x in stmt.tokens if isinstance(x, nfsm.TransitionToken)]

    assert transitions[0].label == "a"
    assert transitions[0].stack_ops == (nfsm.StackOp("_", "a"),)
    assert transitions[1].stack_ops == (nfsm.StackOp("a", None),)
    assert transitions[2].stack_ops == (nfsm.StackOp("x", "y"), nfsm.StackOp(None, "z"))
    assert transitions[3].label == "_"
    assert transitions[3].stack_ops == (nfsm.StackOp(None, "Z"), nfsm.StackOp(), nfsm.StackOp(None, "W"))

def test_epsilon_write_is_no_write():
    stmt, = parse(".s3 -[_,_]_> (s4);")
    assert stmt.tokens[1].stack_ops == (nfsm.StackOp("_", None),)

def test_double_write_rejected():
    with pytest.raises(nfsm.IllegalRuleError, match="written twice"):
        parse(".s0 -[a,_:x]y> s1;")

def test_wildcard_sources():
    regex_stmt, any_stmt = parse("/^s[0-9]/ -foo> bar; * -reset> .s0;")

    assert isinstance(regex_stmt.tokens[0], nfsm.WildcardToken)
    assert regex_stmt.tokens[0].matches("s1")
    assert regex_stmt.tokens[0].matches("s12x")
    assert not regex_stmt.tokens[0].matches("t1")
    assert any_stmt.tokens[0].pattern is None
    assert any_stmt.tokens[0].matches("anything")

def test_invalid_pattern():
    with pytest.raises(nfsm.IllegalRuleError, match="Invalid state pattern"):
        parse("/(/ -f> .s0;")

def test_statement_order_and_comments():
    statements = parse("""
        # the first rule
        .a -f> b;
        b -g> c;  # trailing comment
        c -h> a;
    """)

    assert [stmt.tokens[0].name for stmt in statements] == ["a", "b", "c"]

def test_positions():
    stmt, = parse("\n  .s0 -f> s1;")
    assert stmt.tokens[0].pos == nfsm.SourcePos(2, 3)
    assert stmt.tokens[1].pos == nfsm.SourcePos(2, 8)

def test_syntax_error_has_location():
    with pytest.raises(nfsm.RuleSyntaxError) as e:
        nfsm.compile_rules(".s0 -f> s1;\ns1 -g s2;")

    assert "Syntax error" in str(e.value)
    assert "s1 -g s2;" in str(e.value)

def test_empty_source():
    assert parse("") == []
