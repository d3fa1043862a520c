import unittest

import chainsafe


SCOPED_SOURCE = """\
var top = 1;
function outer(p) {
  let inner = 2;
  {
    const blockOnly = 3;
  }
  try {
    work();
  } catch (e) {
    handle(e);
  }
  use(p, inner, top);
}
"""


def find_node(parsed: chainsafe.ParsedSource, node_type: str, text: str):
    for node in chainsafe.walk_tree(parsed.root):
        if node.type == node_type and parsed.text_of(node) == text:
            return node
    raise AssertionError(f"no {node_type} node with text {text!r}")


class ScopeIndexTests(unittest.TestCase):
    def setUp(self) -> None:
        self.parsed = chainsafe.parse_source(SCOPED_SOURCE)
        self.scopes = chainsafe.ScopeIndex.build(self.parsed)
        self.use_call = find_node(self.parsed, "call_expression", "use(p, inner, top)")
        self.handle_call = find_node(self.parsed, "call_expression", "handle(e)")

    def assertBindingKind(self, name: str, at, kind: str) -> None:
        binding = self.scopes.lookup(name, at)
        self.assertIsNotNone(binding, name)
        self.assertEqual(binding.kind, kind)

    def test_function_scope_bindings(self) -> None:
        self.assertBindingKind("p", self.use_call, "param")
        self.assertBindingKind("inner", self.use_call, "let")
        self.assertBindingKind("top", self.use_call, "var")
        self.assertBindingKind("outer", self.use_call, "function")

    def test_block_bindings_do_not_leak(self) -> None:
        self.assertIsNone(self.scopes.lookup("blockOnly", self.use_call))

    def test_catch_parameter_is_visible_only_in_its_clause(self) -> None:
        self.assertBindingKind("e", self.handle_call, "catch")
        self.assertIsNone(self.scopes.lookup("e", self.use_call))

    def test_unknown_names(self) -> None:
        self.assertIsNone(self.scopes.lookup("work", self.use_call))


class LoopVariableTests(unittest.TestCase):
    def test_of_loop_binding_is_scoped_to_the_loop(self) -> None:
        parsed = chainsafe.parse_source("for (const item of items) { log(item); }\nafter(item);\n")
        scopes = chainsafe.ScopeIndex.build(parsed)
        inside = find_node(parsed, "call_expression", "log(item)")
        outside = find_node(parsed, "call_expression", "after(item)")
        self.assertEqual(scopes.lookup("item", inside).kind, "const")
        self.assertIsNone(scopes.lookup("item", outside))

    def test_destructured_loop_bindings(self) -> None:
        parsed = chainsafe.parse_source("for (let [k, v] of pairs) { log(k, v); }\n")
        scopes = chainsafe.ScopeIndex.build(parsed)
        call = find_node(parsed, "call_expression", "log(k, v)")
        self.assertEqual(scopes.lookup("k", call).kind, "let")
        self.assertEqual(scopes.lookup("v", call).kind, "let")

    def test_var_loop_binding_is_hoisted(self) -> None:
        code = "function f(o) {\n  for (var key in o) { use(key); }\n  done(key);\n}\n"
        parsed = chainsafe.parse_source(code)
        scopes = chainsafe.ScopeIndex.build(parsed)
        done = find_node(parsed, "call_expression", "done(key)")
        self.assertEqual(scopes.lookup("key", done).kind, "var")

    def test_plain_assignment_loop_declares_nothing(self) -> None:
        parsed = chainsafe.parse_source("for (item of items) { log(item); }\n")
        scopes = chainsafe.ScopeIndex.build(parsed)
        call = find_node(parsed, "call_expression", "log(item)")
        self.assertIsNone(scopes.lookup("item", call))


class EnumScopeTests(unittest.TestCase):
    def test_enum_name_and_members(self) -> None:
        parsed = chainsafe.parse_source("enum Flags { A = 1, B = A << 1 }\n", "typescript")
        scopes = chainsafe.ScopeIndex.build(parsed)
        shift = find_node(parsed, "binary_expression", "A << 1")
        self.assertEqual(scopes.lookup("A", shift).kind, "enum_member")
        self.assertEqual(scopes.lookup("Flags", shift).kind, "enum")

    def test_imports_are_declared_at_module_level(self) -> None:
        parsed = chainsafe.parse_source('import lib, { helper as h } from "lib";\nrun(h);\n')
        scopes = chainsafe.ScopeIndex.build(parsed)
        call = find_node(parsed, "call_expression", "run(h)")
        self.assertEqual(scopes.lookup("lib", call).kind, "import")
        self.assertEqual(scopes.lookup("h", call).kind, "import")
        self.assertIsNone(scopes.lookup("helper", call))


if __name__ == "__main__":
    unittest.main()
