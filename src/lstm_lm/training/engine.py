# truncated BPTT over windows with state carried between them
import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import torch
import torch.nn as nn
from torch.optim import Optimizer

from lstm_lm.models.lstm import CharLSTM, RecurrentState, detach_state


@dataclass
class StepResult:
  loss: float
  grad_norm: float
  param_norm: float
  window_lengths: List[int] = field(default_factory=list)

  @property
  def grad_param_ratio(self) -> float:
    if self.param_norm <= 0:
      return float('inf')
    return self.grad_norm / self.param_norm


def window_bounds(total_steps: int, seq_length: int) -> List[Tuple[int, int]]:
  """Split ``total_steps`` timesteps into consecutive ``[start, end)`` windows.

  The last window keeps whatever remainder is left; it is never padded.
  """
  if seq_length <= 0:
    raise ValueError('seq_length must be positive')
  bounds = []
  for start in range(0, total_steps, seq_length):
    bounds.append((start, min(start + seq_length, total_steps)))
  return bounds


def flat_norm(tensors) -> float:
  total = 0.0
  for tensor in tensors:
    if tensor is None:
      continue
    total += float(torch.sum(tensor.detach().float() ** 2))
  return math.sqrt(total) if total > 0 else 0.0


class TruncatedBPTTEngine:
  """Owns the parameters' optimizer, gradient clipping, and the carried recurrent state.

  The carried state persists across windows and across batches for the whole
  training run; only its value crosses a window boundary, never its gradient.
  """

  def __init__(
    self,
    model: CharLSTM,
    optimizer: Optimizer,
    loss_fn: Callable[[torch.Tensor, torch.Tensor], torch.Tensor],
    *,
    seq_length: int,
    grad_clip: float = 5.0,
    device: Optional[torch.device] = None,
  ) -> None:
    if seq_length <= 0:
      raise ValueError('seq_length must be positive')
    self.model = model
    self.optimizer = optimizer
    self.loss_fn = loss_fn
    self.seq_length = int(seq_length)
    self.grad_clip = float(grad_clip)
    self.device = device if device is not None else next(model.parameters()).device
    self.state: Optional[RecurrentState] = None

  def reset_state(self, batch_size: int) -> RecurrentState:
    self.state = self.model.init_state(batch_size, self.device)
    return self.state

  def carried_state(self, batch_size: int) -> RecurrentState:
    if self.state is None or self.state[0][0].size(0) != batch_size:
      return self.reset_state(batch_size)
    return self.state

  def parameters(self) -> List[nn.Parameter]:
    return [p for p in self.model.parameters() if p.requires_grad]

  def feval(self, x: torch.Tensor, y: torch.Tensor) -> StepResult:
    """Forward/backward over every window of one batch.

    Returns the loss averaged over all timesteps of the batch; gradients are
    left clipped in the parameters' ``.grad`` buffers.
    """
    self.optimizer.zero_grad(set_to_none=False)
    self.model.train()
    x = x.to(self.device)
    y = y.to(self.device)
    total_steps = x.size(1)
    if total_steps == 0:
      raise ValueError('batch has no timesteps')

    state = self.carried_state(x.size(0))
    loss_sum = 0.0
    lengths: List[int] = []
    for start, end in window_bounds(total_steps, self.seq_length):
      state = detach_state(state)
      window_loss = None
      for t in range(start, end):
        log_probs, state = self.model.step(x[:, t], state)
        step_loss = self.loss_fn(log_probs, y[:, t])
        window_loss = step_loss if window_loss is None else window_loss + step_loss
      window_loss.backward()
      loss_sum += float(window_loss.detach())
      lengths.append(end - start)
    self.state = detach_state(state)

    params = self.parameters()
    if self.grad_clip > 0:
      torch.nn.utils.clip_grad_value_(params, self.grad_clip)
    return StepResult(
      loss=loss_sum / total_steps,
      grad_norm=flat_norm(p.grad for p in params),
      param_norm=flat_norm(params),
      window_lengths=lengths,
    )

  def train_step(self, batch: Tuple[torch.Tensor, torch.Tensor]) -> StepResult:
    x, y = batch
    result = self.feval(x, y)
    self.optimizer.step()
    return result
