import unittest
from unittest import mock

import chainsafe


def decisions_for(code: str, dialect: str = "javascript", policy=None):
    parsed = chainsafe.parse_source(code, dialect)
    classification = chainsafe.classify_bindings(parsed)
    policy = policy or chainsafe.SkipPolicy()
    return {
        parsed.text_of(node): decision
        for node, decision in chainsafe.iter_decisions(parsed, classification, policy)
    }


class SkipRuleTests(unittest.TestCase):
    def assertRule(self, decisions, access: str, rule: str) -> None:
        self.assertIn(access, decisions)
        self.assertFalse(decisions[access].guard, access)
        self.assertEqual(decisions[access].rule, rule)

    def test_rule_order_is_explicit(self) -> None:
        names = [name for name, _ in chainsafe.SKIP_RULES]
        self.assertEqual(names[0], "already-optional")
        self.assertEqual(names[-1], "enum-declaration-site")
        self.assertEqual(len(names), len(set(names)))

    def test_already_optional(self) -> None:
        decisions = decisions_for("function f(a) { return a?.b; }")
        self.assertRule(decisions, "a?.b", "already-optional")

    def test_key_position(self) -> None:
        decisions = decisions_for("function f(a, b) { return a[b.c]; }")
        self.assertRule(decisions, "b.c", "key-position")
        self.assertTrue(decisions["a[b.c]"].guard)

    def test_this_inside_method(self) -> None:
        decisions = decisions_for("const obj = { greet() { return this.name; } };")
        self.assertRule(decisions, "this.name", "this-in-method")

    def test_receiver_policy(self) -> None:
        decisions = decisions_for("function f() { return Math.PI; }")
        self.assertRule(decisions, "Math.PI", "receiver-policy")

    def test_receiver_non_nullable(self) -> None:
        decisions = decisions_for("const user = getUser();\nlog(user.profile);\n")
        self.assertRule(decisions, "user.profile", "receiver-non-nullable")

    def test_root_policy(self) -> None:
        decisions = decisions_for("log(JSON.data.value);\n")
        self.assertRule(decisions, "JSON.data", "receiver-policy")
        self.assertRule(decisions, "JSON.data.value", "root-policy")

    def test_namespace_body_is_type_context(self) -> None:
        code = "namespace NS {\n  export function g(p) { return p.x; }\n}\n"
        decisions = decisions_for(code, "typescript")
        self.assertRule(decisions, "p.x", "type-context")

    def test_catch_binding(self) -> None:
        code = "try { run(); } catch (err) { report(err.message); }\n"
        decisions = decisions_for(code)
        self.assertRule(decisions, "err.message", "catch-binding")

    def test_write_and_call_positions(self) -> None:
        code = "function f(a) { a.b = 1; a.c.d += 2; a.e++; a.run(); new a.Thing(); }\n"
        decisions = decisions_for(code)
        for access in ("a.b", "a.c", "a.c.d", "a.e", "a.run", "a.Thing"):
            self.assertRule(decisions, access, "write-or-call-position")

    def test_class_member_body(self) -> None:
        decisions = decisions_for("class A { run(user) { return user.name; } }\n")
        self.assertRule(decisions, "user.name", "pattern-or-class-member")

    def test_destructuring_default(self) -> None:
        decisions = decisions_for("function f(a) { const { x = a.b } = a; }\n")
        self.assertRule(decisions, "a.b", "pattern-or-class-member")

    def test_env_accessor(self) -> None:
        policy = chainsafe.SkipPolicy(skip_none=True)
        decisions = decisions_for("const port = process.env.PORT;\n", policy=policy)
        self.assertRule(decisions, "process.env.PORT", "env-accessor")
        self.assertRule(decisions, "process.env", "not-eligible")

    def test_enum_declaration_site(self) -> None:
        decisions = decisions_for("enum Flags { A = 1, B = Flags.A << 1 }\n", "typescript")
        self.assertRule(decisions, "Flags.A", "enum-declaration-site")


class GuardRuleTests(unittest.TestCase):
    def test_parameter_receiver_is_guarded(self) -> None:
        code = "function f(user) { return user.profile; }"
        decision = decisions_for(code)["user.profile"]
        self.assertTrue(decision.guard)
        self.assertEqual(code[decision.offset], ".")
        self.assertEqual(code[:decision.offset], "function f(user) { return user")

    def test_computed_access_offset_is_the_bracket(self) -> None:
        code = "function f(list, i) { return list[i]; }"
        decision = decisions_for(code)["list[i]"]
        self.assertTrue(decision.guard)
        self.assertEqual(code[decision.offset], "[")

    def test_enum_use_site(self) -> None:
        decisions = decisions_for("enum Color { Red }\nconst c = Color.Red;\n", "typescript")
        self.assertTrue(decisions["Color.Red"].guard)

    def test_unknown_global_is_not_eligible(self) -> None:
        decisions = decisions_for("log(document.title);\n")
        self.assertFalse(decisions["document.title"].guard)
        self.assertEqual(decisions["document.title"].rule, "not-eligible")

    def test_callback_context_is_always_eligible(self) -> None:
        decisions = decisions_for("items.forEach(() => { log(settings.level); });\n")
        self.assertTrue(decisions["settings.level"].guard)
        self.assertEqual(decisions["items.forEach"].rule, "write-or-call-position")

    def test_chained_access_inherits_from_left_side(self) -> None:
        decisions = decisions_for("const user = getUser();\nlog(user.profile.name);\n")
        self.assertEqual(decisions["user.profile.name"].rule, "not-eligible")

    def test_offsets_always_precede_an_access_token(self) -> None:
        code = (
            "function render(props, rows, key) {\n"
            "  const first = rows[0].cells[key]\n"
            "    .value;\n"
            "  return props.items.map(item => item.label);\n"
            "}\n"
        )
        parsed = chainsafe.parse_source(code)
        offsets = chainsafe.collect_insertions(
            parsed, chainsafe.classify_bindings(parsed), chainsafe.SkipPolicy()
        )
        self.assertTrue(offsets)
        for offset in offsets:
            self.assertIn(code[offset], ".[")


class TraversalErrorTests(unittest.TestCase):
    def test_rule_failure_carries_node_kind_and_offsets(self) -> None:
        code = "function f(a) { return a.b; }"

        def explode(node, ctx):
            raise RuntimeError("rule failed")

        with mock.patch.object(chainsafe, "SKIP_RULES", (("explode", explode),)):
            with self.assertRaises(chainsafe.TraversalError) as ctx:
                chainsafe.transform_source(code)
        error = ctx.exception
        self.assertEqual(error.node_kind, "member_expression")
        self.assertEqual((error.start, error.end), (code.index("a.b"), code.index("a.b") + 3))
        self.assertEqual(error.phase, "traverse")
        self.assertIsInstance(error.__cause__, RuntimeError)

    def test_offsets_are_measured_in_characters(self) -> None:
        code = 'function f(a) { const s = "ünï"; return a.b; }'

        def explode(node, ctx):
            raise RuntimeError("rule failed")

        with mock.patch.object(chainsafe, "SKIP_RULES", (("explode", explode),)):
            with self.assertRaises(chainsafe.TraversalError) as ctx:
                chainsafe.transform_source(code)
        self.assertEqual(ctx.exception.start, code.index("a.b"))


class LongChainTests(unittest.TestCase):
    def build_chain(self, links: int) -> str:
        chain = "a" + "".join(f".p{i}" for i in range(links))
        return f"for (const a of xs) {{ log({chain}); }}\n"

    def test_eligibility_is_settled_once_per_link(self) -> None:
        code = self.build_chain(1500)
        parsed = chainsafe.parse_source(code)
        ctx = chainsafe.DecisionContext(
            parsed=parsed,
            classification=chainsafe.classify_bindings(parsed),
            policy=chainsafe.SkipPolicy(),
            scopes=chainsafe.ScopeIndex.build(parsed),
        )
        outermost = next(n for n in chainsafe.walk_tree(parsed.root) if n.type == "member_expression")
        self.assertTrue(chainsafe.is_guard_eligible(outermost, ctx))
        self.assertEqual(len(ctx.eligibility), 1500)
        self.assertTrue(all(ctx.eligibility.values()))

    def test_every_link_is_guarded(self) -> None:
        result = chainsafe.transform_source(self.build_chain(200))
        self.assertEqual(result.state, chainsafe.CONVERGED)
        self.assertEqual(result.code.count("?."), 200)
        self.assertNotIn("a.p0", result.code)


if __name__ == "__main__":
    unittest.main()
