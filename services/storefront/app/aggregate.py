"""
Storefront Service — チェックアウト試行の状態

1回のチェックアウト試行の状態遷移とステップログを保持する。

状態遷移:
    IDLE → VALIDATING → CHECKING_STOCK → WRITING_ORDER
         → DECREMENTING_STOCK → (UPDATING_COUPON) → CART_CLEARED → CONFIRMED
    VALIDATING / CHECKING_STOCK / WRITING_ORDER → FAILED
"""

from datetime import datetime, timezone
from enum import Enum


class CheckoutState(str, Enum):
    IDLE = "Idle"
    VALIDATING = "Validating"
    CHECKING_STOCK = "CheckingStock"
    WRITING_ORDER = "WritingOrder"
    DECREMENTING_STOCK = "DecrementingStock"
    UPDATING_COUPON = "UpdatingCoupon"
    CART_CLEARED = "CartCleared"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"


class FailureKind(str, Enum):
    VALIDATION = "validation"
    STOCK = "stock"
    PERSISTENCE = "persistence"


_TRANSITIONS: dict[CheckoutState, set[CheckoutState]] = {
    CheckoutState.IDLE: {CheckoutState.VALIDATING},
    CheckoutState.VALIDATING: {CheckoutState.CHECKING_STOCK, CheckoutState.FAILED},
    CheckoutState.CHECKING_STOCK: {CheckoutState.WRITING_ORDER, CheckoutState.FAILED},
    CheckoutState.WRITING_ORDER: {CheckoutState.DECREMENTING_STOCK, CheckoutState.FAILED},
    CheckoutState.DECREMENTING_STOCK: {
        CheckoutState.UPDATING_COUPON,
        CheckoutState.CART_CLEARED,
    },
    CheckoutState.UPDATING_COUPON: {CheckoutState.CART_CLEARED},
    CheckoutState.CART_CLEARED: {CheckoutState.CONFIRMED},
    CheckoutState.CONFIRMED: set(),
    CheckoutState.FAILED: set(),
}

# 失敗しうる状態 → 失敗の種類
_FAILURE_KINDS = {
    CheckoutState.VALIDATING: FailureKind.VALIDATION,
    CheckoutState.CHECKING_STOCK: FailureKind.STOCK,
    CheckoutState.WRITING_ORDER: FailureKind.PERSISTENCE,
}


class InvalidTransitionError(RuntimeError):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CheckoutAttempt:
    """チェックアウト試行 — 現在の状態とステップログ"""

    def __init__(self) -> None:
        self.state = CheckoutState.IDLE
        self.failure: FailureKind | None = None
        self.order_number: str | None = None
        self.steps: list[dict] = []

    @property
    def is_terminal(self) -> bool:
        return self.state in (CheckoutState.CONFIRMED, CheckoutState.FAILED)

    def advance(self, to: CheckoutState) -> None:
        if to == CheckoutState.FAILED:
            raise InvalidTransitionError("use fail() to enter the failed state")
        self._move(to)

    def fail(self) -> FailureKind:
        kind = _FAILURE_KINDS.get(self.state)
        if kind is None:
            raise InvalidTransitionError(f"{self.state.value} cannot fail")
        self._move(CheckoutState.FAILED)
        self.failure = kind
        return kind

    def _move(self, to: CheckoutState) -> None:
        if to not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.state.value} -> {to.value}")
        self.state = to

    # ── ステップログ ─────────────────────────────

    def begin_step(self, action: str, **extra) -> dict:
        step = {
            "step": len(self.steps) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": _now(),
            **extra,
        }
        self.steps.append(step)
        return step

    def complete_step(self) -> None:
        self.steps[-1]["status"] = "COMPLETED"

    def fail_step(self, error: str) -> None:
        self.steps[-1]["status"] = "FAILED"
        self.steps[-1]["error"] = error

    def skip_step(self, action: str) -> None:
        self.begin_step(action)
        self.steps[-1]["status"] = "SKIPPED"
