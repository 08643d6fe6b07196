from __future__ import annotations

import unittest

from assistant.errors import BudgetExceededError
from assistant.history import count_total_tokens, reduce_history
from assistant.messages import ContentPart, Message, Role, system_message
from assistant.tokens import APPROX_IMAGE_TOKENS, TokenCounter

from fakes import CharEncoding


def user(text: str) -> Message:
    return Message(Role.USER, text, chat_id=1, user_id=2)


def assistant(text: str) -> Message:
    return Message(Role.ASSISTANT, text, chat_id=1)


class ReduceHistoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.counter = TokenCounter("test-model", encoding=CharEncoding())
        self.leading = system_message("sys")
        self.history = [user("aaaa"), assistant("bbbb"), user("cccc"), assistant("dddd")]

    def reduce(self, history, budget, *, leading=None, augmentation=None):
        return reduce_history(
            history,
            leading=leading if leading is not None else self.leading,
            augmentation=augmentation,
            budget=budget,
            counter=self.counter,
        )

    def test_output_never_exceeds_budget(self) -> None:
        for budget in range(4, 25):
            result = self.reduce(self.history, budget)
            self.assertLessEqual(count_total_tokens(result, self.counter), budget)

    def test_retained_messages_keep_chronological_order(self) -> None:
        for budget in range(4, 25):
            kept = self.reduce(self.history, budget)[1:]
            full = [m for m in kept if m in self.history]
            positions = [self.history.index(m) for m in full]
            self.assertEqual(positions, sorted(positions))

    def test_history_that_fits_is_unchanged(self) -> None:
        result = self.reduce(self.history, 100)
        self.assertEqual(result, [self.leading, *self.history])
        self.assertEqual(self.reduce(result[1:], 100), result)

    def test_zero_budget_yields_empty_result(self) -> None:
        self.assertEqual(self.reduce(self.history, 0), [])

    def test_single_oversized_message_is_truncated_to_its_suffix(self) -> None:
        result = self.reduce([user("abcdefghij")], 7)
        self.assertEqual(len(result), 2)
        self.assertEqual(result[1].content, "ghij")
        self.assertEqual(self.counter.count_message(result[1]), 7 - 3)
        self.assertEqual(result[1].role, Role.USER)
        self.assertEqual(result[1].chat_id, 1)

    def test_only_oldest_retained_message_is_partial(self) -> None:
        result = self.reduce(self.history, 3 + 10)
        self.assertEqual([m.content for m in result[1:]], ["bb", "cccc", "dddd"])

    def test_overhead_filling_budget_is_a_configuration_error(self) -> None:
        with self.assertRaises(BudgetExceededError):
            self.reduce(self.history, 3)
        with self.assertRaises(BudgetExceededError):
            self.reduce(self.history, 8, augmentation=Message(Role.ASSISTANT, "memory"))

    def test_augmentation_follows_leading_prompt(self) -> None:
        memory = Message(Role.ASSISTANT, "mem")
        result = self.reduce(self.history, 100, augmentation=memory)
        self.assertEqual(result[:2], [self.leading, memory])
        self.assertEqual(result[2:], self.history)

    def test_image_that_does_not_fit_is_dropped_from_partial_message(self) -> None:
        photo = Message(
            Role.USER,
            (ContentPart.of_image("data:image/jpeg;base64,AAAA"), ContentPart.of_text("hello")),
            chat_id=1,
        )
        result = self.reduce([photo], 3 + APPROX_IMAGE_TOKENS + 2)
        self.assertEqual(result[1].content, (ContentPart.of_text("hello"),))

    def test_empty_history_returns_only_prefix(self) -> None:
        self.assertEqual(self.reduce([], 10), [self.leading])


if __name__ == "__main__":
    unittest.main()
