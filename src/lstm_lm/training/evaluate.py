"""Inference-mode loss over a whole data split."""

from typing import Callable, Optional

import torch

from lstm_lm.data.loader import LineSplitLoader
from lstm_lm.models.lstm import CharLSTM
from lstm_lm.training.optim_factory import build_loss


@torch.no_grad()
def evaluate_split(
  model: CharLSTM,
  loader: LineSplitLoader,
  split: int,
  loss_fn: Optional[Callable[[torch.Tensor, torch.Tensor], torch.Tensor]] = None,
  max_batches: Optional[int] = None,
) -> float:
  """Average per-timestep loss of ``model`` over ``split``.

  Every batch starts from the zero state; nothing is carried between batches
  and neither the parameters nor the training engine's state are touched.
  """
  if loader.split_size(split) == 0:
    raise ValueError(f'split {split} has no batches to evaluate')
  loss_fn = loss_fn or build_loss()
  device = next(model.parameters()).device
  was_training = model.training
  model.eval()
  total_loss = 0.0
  total_steps = 0
  try:
    for x, y in loader.iter_split(split, max_batches=max_batches):
      x = x.to(device)
      y = y.to(device)
      state = model.init_state(x.size(0), device)
      for t in range(x.size(1)):
        log_probs, state = model.step(x[:, t], state)
        total_loss += float(loss_fn(log_probs, y[:, t]))
      total_steps += x.size(1)
  finally:
    model.train(was_training)
  return total_loss / max(total_steps, 1)
