"""Utility helpers for wiring optimizers, learning-rate decay, and losses into the trainer.

RMSProp is built directly from ``torch.optim`` because it is the classic
choice for character-level LSTMs; every other optimizer name is resolved
through pytorch_optimizer's ``create_optimizer`` helper.  All helpers accept
plain dictionaries, OmegaConf nodes, or CLI-provided JSON strings.
"""
from __future__ import annotations

import ast
import json
from typing import Any, Callable, Dict, Optional, Tuple, Union

import torch
import torch.nn.functional as F
from torch import nn
from torch.optim import Optimizer, RMSprop

from pytorch_optimizer import create_optimizer, get_supported_optimizers

from omegaconf import DictConfig, OmegaConf

# ---------------------------------------------------------------------------
# Public metadata -----------------------------------------------------------------

SUPPORTED_OPTIMIZERS: Tuple[str, ...] = tuple(sorted(set(get_supported_optimizers()) | {'rmsprop'}))

OPTIMIZER_ALIASES: Dict[str, str] = {
  'rms_prop': 'rmsprop',
  'rms': 'rmsprop',
}

RMSPROP_EPS_DEFAULT = 1e-8

# ---------------------------------------------------------------------------
# Helper utilities -------------------------------------------------------------


def _is_config_mapping(value: Any) -> bool:
  return isinstance(value, (dict, DictConfig))


def _materialise_mapping(value: Any) -> Dict[str, Any]:
  if _is_config_mapping(value):
    if isinstance(value, DictConfig):
      return dict(OmegaConf.to_container(value, resolve=True))
    return dict(value)
  return {}


def parse_kwargs(value: Union[None, str, Dict[str, Any]]) -> Dict[str, Any]:
  """Parse CLI/config overrides.

  Accepts dictionaries directly or JSON / Python literals supplied as strings.
  """
  if value is None:
    return {}
  if isinstance(value, dict):
    return dict(value)
  if isinstance(value, DictConfig):
    return dict(OmegaConf.to_container(value, resolve=True))
  if not isinstance(value, str):
    raise TypeError(f'Expected mapping or string for kwargs, received {type(value)!r}.')

  raw = value.strip()
  if not raw:
    return {}

  for parser in (json.loads, ast.literal_eval):
    try:
      parsed = parser(raw)
    except (ValueError, SyntaxError):
      continue
    if isinstance(parsed, dict):
      return dict(parsed)
  raise ValueError(f'Failed to parse kwargs string: {value!r}. Provide JSON or a Python dict literal.')


def normalise_name(name: Optional[str], *, default: str) -> str:
  if not name:
    return default
  resolved = name.strip().lower()
  if not resolved:
    return default
  return resolved


def canonical_name(name: Optional[str], *, default: str = 'rmsprop') -> str:
  resolved = normalise_name(name, default=default)
  return OPTIMIZER_ALIASES.get(resolved, resolved)


def set_optimizer_lr(optimizer: Optimizer, lr: float) -> None:
  for group in optimizer.param_groups:
    group['lr'] = float(lr)


# ---------------------------------------------------------------------------
# Optimizer construction ------------------------------------------------------


def build_optimizer(
  model: nn.Module,
  *,
  base_lr: float,
  cfg: Any,
  name_override: Optional[str] = None,
  cli_kwargs: Optional[Dict[str, Any]] = None,
) -> Tuple[Optimizer, str, Dict[str, Any]]:
  """Create the optimizer that updates ``model`` in place.

  Returns the instantiated optimizer, the resolved optimizer name, and the
  merged keyword arguments used during construction.
  """
  cfg_mapping = _materialise_mapping(cfg)
  cfg_kwargs = parse_kwargs(cfg_mapping.get('kwargs'))
  effective_kwargs = {**cfg_kwargs, **(cli_kwargs or {})}

  raw_name = name_override or cfg_mapping.get('name') or 'rmsprop'
  resolved_name = canonical_name(raw_name)

  if resolved_name not in SUPPORTED_OPTIMIZERS:
    raise ValueError(
      f"Unsupported optimizer '{raw_name}'. Available values: {', '.join(SUPPORTED_OPTIMIZERS)}"
    )

  if resolved_name == 'rmsprop':
    # decay_rate is the running squared-gradient average decay (RMSProp alpha).
    effective_kwargs.setdefault('alpha', float(cfg_mapping.get('decay_rate', 0.95)))
    effective_kwargs.setdefault('eps', float(cfg_mapping.get('eps', RMSPROP_EPS_DEFAULT)))
    optimizer = RMSprop(model.parameters(), lr=float(base_lr), **effective_kwargs)
    return optimizer, resolved_name, effective_kwargs

  weight_decay = float(cfg_mapping.get('weight_decay', 0.0))
  optimizer = create_optimizer(
    model,
    resolved_name,
    lr=float(base_lr),
    weight_decay=weight_decay,
    **effective_kwargs,
  )
  return optimizer, resolved_name, effective_kwargs


# ---------------------------------------------------------------------------
# Learning-rate decay ---------------------------------------------------------


class EpochDecayController:
  """Multiplies the learning rate by ``decay`` at each epoch boundary.

  Decay only starts once ``decay_after`` epochs have been completed and is a
  no-op when ``decay >= 1``.
  """

  def __init__(self, optimizer: Optimizer, *, base_lr: float, decay: float, decay_after: float) -> None:
    self.optimizer = optimizer
    self.base_lr = float(base_lr)
    self.decay = float(decay)
    self.decay_after = float(decay_after)
    self._last_lr = float(base_lr)
    self._decays = 0

  @property
  def last_lr(self) -> float:
    return float(self._last_lr)

  @property
  def enabled(self) -> bool:
    return self.decay < 1.0

  def epoch_end(self, epoch: float) -> Optional[float]:
    """Apply decay for a finished epoch; returns the new lr when it changed."""
    if not self.enabled or epoch < self.decay_after:
      return None
    self._last_lr = self._last_lr * self.decay
    self._decays += 1
    set_optimizer_lr(self.optimizer, self._last_lr)
    return self._last_lr

  def state_dict(self) -> Dict[str, Any]:
    return {
      'last_lr': self._last_lr,
      'decays': self._decays,
      'base_lr': self.base_lr,
    }

  def load_state_dict(self, state: Dict[str, Any]) -> None:
    self._last_lr = float(state.get('last_lr', self.base_lr))
    self._decays = int(state.get('decays', 0))
    set_optimizer_lr(self.optimizer, self._last_lr)


def build_decay_controller(optimizer: Optimizer, *, base_lr: float, cfg: Any) -> EpochDecayController:
  cfg_mapping = _materialise_mapping(cfg)
  decay = float(cfg_mapping.get('lr_decay', 1.0))
  if decay <= 0:
    raise ValueError('optim.lr_decay must be positive')
  return EpochDecayController(
    optimizer,
    base_lr=base_lr,
    decay=decay,
    decay_after=float(cfg_mapping.get('lr_decay_after', 0)),
  )


# ---------------------------------------------------------------------------
# Loss construction ----------------------------------------------------------

class LossAdapter:
  """Negative log-likelihood over log-probabilities, averaged across the batch."""

  def __init__(self, loss_module: Callable[[torch.Tensor, torch.Tensor], torch.Tensor]) -> None:
    self.loss_module = loss_module

  def __call__(self, log_probs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    vocab_dim = log_probs.size(-1)
    return self.loss_module(log_probs.reshape(-1, vocab_dim), targets.reshape(-1).long())


def build_loss() -> LossAdapter:
  return LossAdapter(lambda log_probs, targets: F.nll_loss(log_probs, targets, reduction='mean'))


__all__ = [
  'build_decay_controller',
  'build_loss',
  'build_optimizer',
  'EpochDecayController',
  'LossAdapter',
  'SUPPORTED_OPTIMIZERS',
  'parse_kwargs',
  'set_optimizer_lr',
]
