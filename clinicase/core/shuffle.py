"""Option shuffling with correct-index remapping."""

import secrets

from clinicase.core.turn import QuestionPayload


class OptionRandomizer:
    """
    Shuffles answer options so the correct answer's position cannot be memorized.

    Uses the ``secrets`` module as the random source for a Fisher-Yates shuffle.
    """

    def __init__(self, enabled: bool = True) -> None:
        """
        Initialize the randomizer.

        Args:
            enabled (bool, optional): False keeps option order untouched. Defaults to True.
        """
        self.enabled = enabled

    def shuffle(self, options: list[str], correct_index: int) -> tuple[list[str], int]:
        """
        Shuffle options and relocate the correct index.

        The new index is the position of the option text that was correct before the
        shuffle. Fewer than two options or an out-of-range index leave the input as is.

        Args:
            options (list[str]): The option texts.
            correct_index (int): Index of the correct option.

        Returns:
            tuple[list[str], int]: The shuffled options and the remapped index.
        """
        if not self.enabled or len(options) < 2:
            return list(options), correct_index
        if not 0 <= correct_index < len(options):
            return list(options), correct_index

        correct_text = options[correct_index]
        out = list(options)
        for i in range(len(out) - 1, 0, -1):
            j = secrets.randbelow(i + 1)
            out[i], out[j] = out[j], out[i]
        return out, out.index(correct_text)

    def apply(self, question: QuestionPayload) -> bool:
        """
        Shuffle a question in place when it has a valid correct index.

        Returns:
            bool: True if the question was shuffled.
        """
        if not self.enabled or not question.has_valid_correct_index():
            return False
        options, ci = self.shuffle(question.options, question.correct_index)
        question.options = options
        question.correct_index = ci
        return True
