import random
import unittest


class TestNaming(unittest.TestCase):
    def test_session_names_for_tabs(self) -> None:
        from magent.kernel.naming import session_name, session_tab_number

        first = session_name("magent", "My Project!", "abc123")
        self.assertEqual(first, "magent-my-project-abc123")
        self.assertEqual(session_name("magent", "My Project!", "abc123", tab=3), "magent-my-project-abc123-tab-3")
        self.assertEqual(session_tab_number("magent", "abc123", first), 1)
        self.assertEqual(session_tab_number("magent", "abc123", first + "-tab-4"), 4)
        self.assertIsNone(session_tab_number("magent", "abc123", "magent-my-project-other"))
        self.assertIsNone(session_tab_number("magent", "abc123", first + "-superseded-1"))

    def test_slugify_is_bounded(self) -> None:
        from magent.kernel.naming import MAX_SLUG_LEN, slugify

        self.assertEqual(slugify("Hello  World"), "hello-world")
        self.assertEqual(slugify("***"), "project")
        long = slugify("a" * 40)
        self.assertEqual(len(long), MAX_SLUG_LEN)

    def test_next_tab_number(self) -> None:
        from magent.kernel.naming import next_tab_number, session_name

        base = session_name("magent", "demo", "t1")
        self.assertEqual(next_tab_number("magent", "t1", []), 1)
        self.assertEqual(next_tab_number("magent", "t1", [base]), 2)
        self.assertEqual(next_tab_number("magent", "t1", [base, base + "-tab-5"]), 6)
        self.assertEqual(next_tab_number("magent", "t1", ["custom"]), 1)

    def test_pick_available_name_suffixes(self) -> None:
        from magent.kernel.errors import Conflict
        from magent.kernel.naming import pick_available_name

        taken = {"feat", "feat-2"}
        self.assertEqual(pick_available_name(lambda n: n not in taken, requested="feat"), "feat-3")

        everything = lambda n: False  # noqa: E731
        with self.assertRaises(Conflict):
            pick_available_name(everything, requested="feat")
        with self.assertRaises(Conflict):
            pick_available_name(everything, rng=random.Random(1))

    def test_generated_name_shape(self) -> None:
        from magent.kernel.naming import GENERATED_NAME_RE, pick_available_name

        name = pick_available_name(lambda n: True, rng=random.Random(3))
        self.assertRegex(name, GENERATED_NAME_RE)

    def test_validate_thread_name(self) -> None:
        from magent.kernel.errors import ValidationFailure
        from magent.kernel.naming import validate_thread_name

        self.assertEqual(validate_thread_name("  ok-name "), "ok-name")
        for bad in ("", "   ", "a/b", "-x", ".hidden", "two words"):
            with self.assertRaises(ValidationFailure):
                validate_thread_name(bad)

    def test_superseded_name_skips_taken(self) -> None:
        from magent.kernel.naming import superseded_name

        self.assertEqual(superseded_name("s", []), "s-superseded-1")
        self.assertEqual(superseded_name("s", ["s-superseded-1", "s-superseded-2"]), "s-superseded-3")

    def test_rename_candidates(self) -> None:
        from magent.kernel.naming import rename_candidates

        c = rename_candidates("Fix the Login bug, please")
        self.assertEqual(c[:2], ["fix-the-login", "fix-the"])
        self.assertIn("fix-the-login-2", c)
        self.assertIn("fix-the-9", c)
        self.assertEqual(rename_candidates("!!!"), [])
        self.assertEqual(rename_candidates("single")[0], "single")
        self.assertEqual(len(rename_candidates("single")), 9)


if __name__ == "__main__":
    unittest.main()
