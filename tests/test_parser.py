from __future__ import annotations

import unittest

from taskledger.parser import (
    bullet_body,
    casefold_whitespace,
    dedupe,
    is_bullet_line,
    parse_task_list,
    render_bullet,
)


class TestParser(unittest.TestCase):
    def test_parse_task_list_accepts_all_marker_styles(self) -> None:
        text = "\n".join(
            [
                "[タスク]",
                "・資料作成",
                "- レビュー",
                "* 会議準備",
                "+ 経費精算",
                "1. メール返信",
                "12. 請求書",
            ]
        )
        self.assertEqual(
            ["資料作成", "レビュー", "会議準備", "経費精算", "メール返信", "請求書"],
            parse_task_list(text),
        )

    def test_prose_blank_and_empty_bullets_are_ignored(self) -> None:
        text = "今日はこれをやります\n\n・\n-   \n---\n  ・ 本文  \nおわり"
        self.assertEqual(["本文"], parse_task_list(text))

    def test_duplicates_collapse_to_first_occurrence(self) -> None:
        self.assertEqual(["a", "b"], parse_task_list("・a\n・b\n- a\n・b"))

    def test_empty_message_parses_to_empty_list(self) -> None:
        self.assertEqual([], parse_task_list(""))
        self.assertEqual([], parse_task_list("ただの雑談です"))

    def test_bullet_body_and_is_bullet_line(self) -> None:
        self.assertEqual("task", bullet_body("  - task "))
        self.assertIsNone(bullet_body("task"))
        self.assertTrue(is_bullet_line("・x"))
        self.assertFalse(is_bullet_line("現在のタスク:"))

    def test_render_bullet_round_trips_bodies_that_start_with_markers(self) -> None:
        for task in ["普通のタスク", "2024年の振り返り", "-5度対策", ".env 更新", "・重複"]:
            with self.subTest(task=task):
                rendered = render_bullet(task)
                self.assertTrue(rendered.startswith("・"))
                self.assertEqual(task, bullet_body(rendered))
                self.assertEqual([task], parse_task_list(rendered))

    def test_normalizer_hook_is_applied_before_dedupe(self) -> None:
        text = "・Write  Report\n・write report\n・Other"
        self.assertEqual(["write report", "other"], parse_task_list(text, normalize=casefold_whitespace))

    def test_dedupe_keeps_order(self) -> None:
        self.assertEqual(["b", "a", "c"], dedupe(["b", "a", "b", "c", "a"]))


if __name__ == "__main__":
    unittest.main()
