class MealPlanError(Exception):
    """Base class for meal-plan engine failures surfaced to callers."""


class NotFoundError(MealPlanError, LookupError):
    """Raised when a referenced plan, slot, user, or progress record does not exist."""


class InvariantViolation(MealPlanError, ValueError):
    """Raised instead of a write that would leave two current plans or a negative day-span."""
