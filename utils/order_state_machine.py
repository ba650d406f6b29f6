#!/usr/bin/env python3
"""
Order State Machine
Role-gated transition table for the order lifecycle. Pure data and functions:
no database access, no side effects.
"""

import logging
from typing import Dict, FrozenSet, Set, Union

from models import OrderStatus, UserRole
from utils.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)

StatusLike = Union[OrderStatus, str]
RoleLike = Union[UserRole, str]

_S = OrderStatus
_CREATOR = UserRole.CREATOR.value
_EDITOR = UserRole.EDITOR.value
_ADMIN = UserRole.ADMIN.value


def _targets(*statuses: OrderStatus) -> FrozenSet[str]:
    return frozenset(status.value for status in statuses)


class OrderStateValidator:
    """Validates order status transitions per actor role"""

    # from status -> role -> allowed target statuses
    VALID_TRANSITIONS: Dict[str, Dict[str, FrozenSet[str]]] = {
        _S.OPEN.value: {
            _CREATOR: _targets(_S.CANCELLED),
            _ADMIN: _targets(_S.CANCELLED),
        },
        _S.APPLIED.value: {
            _CREATOR: _targets(_S.ASSIGNED, _S.CANCELLED),
            _ADMIN: _targets(_S.ASSIGNED, _S.CANCELLED),
        },
        _S.ASSIGNED.value: {
            _EDITOR: _targets(_S.IN_PROGRESS),
            _CREATOR: _targets(_S.CANCELLED),
            _ADMIN: _targets(_S.CANCELLED),
        },
        _S.IN_PROGRESS.value: {
            _EDITOR: _targets(_S.PREVIEW_SUBMITTED, _S.FINAL_SUBMITTED),
            _CREATOR: _targets(_S.CANCELLED),
            _ADMIN: _targets(_S.CANCELLED),
        },
        _S.PREVIEW_SUBMITTED.value: {
            _CREATOR: _targets(_S.REVISION_REQUESTED, _S.IN_PROGRESS),
            _ADMIN: _targets(_S.REVISION_REQUESTED, _S.IN_PROGRESS, _S.CANCELLED),
        },
        _S.REVISION_REQUESTED.value: {
            _EDITOR: _targets(_S.IN_PROGRESS, _S.PREVIEW_SUBMITTED),
            _ADMIN: _targets(_S.IN_PROGRESS, _S.PREVIEW_SUBMITTED, _S.CANCELLED),
        },
        _S.FINAL_SUBMITTED.value: {
            _CREATOR: _targets(_S.PUBLISHED, _S.COMPLETED),
            _ADMIN: _targets(_S.PUBLISHED, _S.COMPLETED, _S.CANCELLED),
        },
        _S.PUBLISHED.value: {
            _CREATOR: _targets(_S.COMPLETED),
            _ADMIN: _targets(_S.COMPLETED),
        },
        # Terminal states
        _S.COMPLETED.value: {_ADMIN: frozenset()},
        _S.CANCELLED.value: {_ADMIN: frozenset()},
    }

    TERMINAL_STATES: FrozenSet[str] = _targets(_S.COMPLETED, _S.CANCELLED)

    @staticmethod
    def _value(item: Union[OrderStatus, UserRole, str]) -> str:
        return item.value if hasattr(item, "value") else str(item).lower()

    @classmethod
    def can_transition(cls, current_status: StatusLike, new_status: StatusLike, role: RoleLike) -> bool:
        """True for a same-state no-op, otherwise only for an exact table match"""
        current = cls._value(current_status)
        target = cls._value(new_status)
        if current == target:
            return True
        by_role = cls.VALID_TRANSITIONS.get(current, {})
        return target in by_role.get(cls._value(role), frozenset())

    @classmethod
    def allowed_targets(cls, current_status: StatusLike, role: RoleLike) -> Set[str]:
        """Get all statuses the role may move the order to from current_status"""
        by_role = cls.VALID_TRANSITIONS.get(cls._value(current_status), {})
        return set(by_role.get(cls._value(role), frozenset()))

    @classmethod
    def is_terminal_state(cls, status: StatusLike) -> bool:
        return cls._value(status) in cls.TERMINAL_STATES

    @classmethod
    def ensure_transition(cls, current_status: StatusLike, new_status: StatusLike, role: RoleLike) -> None:
        """Raise InvalidTransitionError unless the transition is allowed"""
        if not cls.can_transition(current_status, new_status, role):
            current = cls._value(current_status).upper()
            target = cls._value(new_status).upper()
            actor = cls._value(role).upper()
            logger.warning(f"🚫 BLOCKED_TRANSITION: {current} -> {target} for role {actor}")
            raise InvalidTransitionError(current, target, actor)


# Global convenience functions
def can_transition(current_status: StatusLike, new_status: StatusLike, role: RoleLike) -> bool:
    return OrderStateValidator.can_transition(current_status, new_status, role)


def allowed_targets(current_status: StatusLike, role: RoleLike) -> Set[str]:
    return OrderStateValidator.allowed_targets(current_status, role)


def is_terminal(status: StatusLike) -> bool:
    return OrderStateValidator.is_terminal_state(status)


def ensure_transition(current_status: StatusLike, new_status: StatusLike, role: RoleLike) -> None:
    OrderStateValidator.ensure_transition(current_status, new_status, role)


__all__ = [
    "OrderStateValidator",
    "can_transition",
    "allowed_targets",
    "is_terminal",
    "ensure_transition",
]
