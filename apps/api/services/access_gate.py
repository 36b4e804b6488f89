"""Access gate deciding whether a user may play a content item.

Every play and chapter-navigation check routes through `check_access`:

- Owned items (purchased or claimed) are always accessible.
- Preview content is always accessible, checked before the subscription gate.
- Free items are accessible when subscriptions are not offered in this
  deployment, or when the user has an active subscription.
- Paid items that are not owned are locked until purchased.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class AccessType(str, Enum):
    """Possible outcomes of an access check."""

    ALLOWED = "allowed"
    NEEDS_SUBSCRIPTION = "needs_subscription"
    NEEDS_PURCHASE = "needs_purchase"


class AccessResult(BaseModel):
    """Result of an access check."""

    model_config = ConfigDict(frozen=True)

    type: AccessType
    is_preview: bool = False

    @property
    def can_access(self) -> bool:
        return self.type is AccessType.ALLOWED

    @property
    def needs_subscription(self) -> bool:
        return self.type is AccessType.NEEDS_SUBSCRIPTION

    @property
    def needs_purchase(self) -> bool:
        return self.type is AccessType.NEEDS_PURCHASE


def check_access(
    is_owned: bool,
    is_free: bool,
    is_subscription_active: bool,
    is_subscription_available: bool,
    *,
    is_preview: bool = False,
) -> AccessResult:
    """
    Check whether content is accessible.

    Pure function: the same inputs always give the same result.

    Args:
        is_owned: User holds an entitlement for the item.
        is_free: Item is marked free (free with subscription).
        is_subscription_active: User currently has an active subscription.
        is_subscription_available: Subscriptions are offered in this deployment.
        is_preview: Item is preview content (e.g. a sample chapter).

    Returns:
        AccessResult describing whether access is allowed and, if not, why.
    """
    if is_owned:
        return AccessResult(type=AccessType.ALLOWED)

    if is_preview:
        return AccessResult(type=AccessType.ALLOWED, is_preview=True)

    if is_free:
        if not is_subscription_available or is_subscription_active:
            return AccessResult(type=AccessType.ALLOWED)
        return AccessResult(type=AccessType.NEEDS_SUBSCRIPTION)

    return AccessResult(type=AccessType.NEEDS_PURCHASE)
