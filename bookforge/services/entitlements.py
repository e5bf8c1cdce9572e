"""Capability checks for paid features."""

from __future__ import annotations

import logging
from collections import deque
from typing import Literal, Protocol

from bookforge.config import Settings

logger = logging.getLogger(__name__)

FeatureKey = Literal["continue-generation", "generate-book", "audiobook"]

# Only the most recent upgrade prompts are kept.
RECENT_PROMPTS_LIMIT = 100


class UpgradeRequiredError(Exception):
  """Raised when a run needs a feature the caller's plan does not include."""

  def __init__(self, feature_key: FeatureKey) -> None:
    super().__init__(f"Upgrade required for feature: {feature_key}")
    self.feature_key = feature_key


class EntitlementGate(Protocol):
  """Collaborator answering whether paid features are available."""

  def is_pro_user(self) -> bool:
    """Return True when paid features are unlocked."""

  def trigger_upgrade_modal(self, feature_key: FeatureKey) -> None:
    """Ask the caller's surface to offer an upgrade for a feature."""


class StaticEntitlementGate:
  """Entitlement gate driven by deployment settings; records upgrade prompts."""

  def __init__(self, settings: Settings) -> None:
    self._enabled = settings.pro_features_enabled
    self.upgrade_prompts: deque[FeatureKey] = deque(maxlen=RECENT_PROMPTS_LIMIT)

  def is_pro_user(self) -> bool:
    return self._enabled

  def trigger_upgrade_modal(self, feature_key: FeatureKey) -> None:
    logger.info("Upgrade required for feature=%s", feature_key)
    self.upgrade_prompts.append(feature_key)


def require_feature(gate: EntitlementGate, feature_key: FeatureKey) -> None:
  """Raise UpgradeRequiredError after prompting when the feature is locked."""
  if gate.is_pro_user():
    return
  gate.trigger_upgrade_modal(feature_key)
  raise UpgradeRequiredError(feature_key)
