"""Turn budget policy."""

from dataclasses import dataclass

from loguru import logger


@dataclass
class TurnBudgetPolicy:
    """
    Resolves how many questions a conversation gets.

    A caller-supplied value is honored only inside ``[min_requested, max_requested]``;
    anything else falls back to ``default``.
    """

    default: int = 4
    min_requested: int = 3
    max_requested: int = 10

    def resolve(self, requested: int | None) -> int:
        """
        Pick the budget for a new conversation.

        Args:
            requested (int | None): The caller's ``max_interactions``, if any.

        Returns:
            int: The budget to use.
        """
        if requested is not None and self.min_requested <= requested <= self.max_requested:
            return requested
        if requested:
            logger.debug(
                "[TurnBudgetPolicy] ignoring max_interactions={} outside [{}, {}]",
                requested,
                self.min_requested,
                self.max_requested,
            )
        return max(1, self.default)
