# multi-layer character LSTM with an explicit per-timestep step()
from typing import List, Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

LayerState = Tuple[torch.Tensor, torch.Tensor]  # (cell, hidden), each (B, H)
RecurrentState = Tuple[LayerState, ...]

INIT_RANGE = 0.08


class LSTMLayer(nn.Module):
  def __init__(self, input_size, rnn_size):
    super().__init__()
    self.rnn_size = rnn_size
    self.i2h = nn.Linear(input_size, 4 * rnn_size)
    self.h2h = nn.Linear(rnn_size, 4 * rnn_size)

  def forward(self, x, prev_c, prev_h):
    gates = self.i2h(x) + self.h2h(prev_h)
    in_gate, forget_gate, out_gate, in_transform = gates.chunk(4, dim=-1)
    in_gate = torch.sigmoid(in_gate)
    forget_gate = torch.sigmoid(forget_gate)
    out_gate = torch.sigmoid(out_gate)
    in_transform = torch.tanh(in_transform)
    next_c = forget_gate * prev_c + in_gate * in_transform
    next_h = out_gate * torch.tanh(next_c)
    return next_c, next_h


class CharLSTM(nn.Module):
  """Stack of LSTM layers over one-hot characters, projected to log-probabilities.

  A single module is invoked once per timestep; every invocation shares the
  same parameters, so gradients from all timesteps accumulate into the same
  ``.grad`` buffers.
  """

  def __init__(self, vocab_size, rnn_size=128, num_layers=2, dropout=0.0):
    super().__init__()
    if not 0.0 <= dropout < 1.0:
      raise ValueError('dropout must lie in [0, 1)')
    self.vocab_size = vocab_size
    self.rnn_size = rnn_size
    self.num_layers = num_layers
    self.dropout = dropout
    layers = []
    for L in range(num_layers):
      input_size = vocab_size if L == 0 else rnn_size
      layers.append(LSTMLayer(input_size, rnn_size))
    self.layers = nn.ModuleList(layers)
    self.drop = nn.Dropout(dropout)
    self.decoder = nn.Linear(rnn_size, vocab_size)
    self.reset_parameters()

  def reset_parameters(self, bound: float = INIT_RANGE) -> None:
    with torch.no_grad():
      for param in self.parameters():
        param.uniform_(-bound, bound)

  def init_state(self, batch_size: int, device: Optional[torch.device] = None) -> RecurrentState:
    if device is None:
      device = self.decoder.weight.device
    dtype = self.decoder.weight.dtype
    return tuple(
      (
        torch.zeros(batch_size, self.rnn_size, device=device, dtype=dtype),
        torch.zeros(batch_size, self.rnn_size, device=device, dtype=dtype),
      )
      for _ in range(self.num_layers)
    )

  def step(self, input_ids: torch.Tensor, state: RecurrentState) -> Tuple[torch.Tensor, RecurrentState]:
    if len(state) != self.num_layers:
      raise ValueError(f'expected state for {self.num_layers} layers, got {len(state)}')
    x = F.one_hot(input_ids.long(), self.vocab_size).to(self.decoder.weight.dtype)
    next_state: List[LayerState] = []
    for L, layer in enumerate(self.layers):
      prev_c, prev_h = state[L]
      if L > 0:
        x = self.drop(x)
      next_c, next_h = layer(x, prev_c, prev_h)
      next_state.append((next_c, next_h))
      x = next_h
    top_h = self.drop(x)
    log_probs = F.log_softmax(self.decoder(top_h), dim=-1)
    return log_probs, tuple(next_state)

  def forward(self, inputs: torch.Tensor, state: Optional[RecurrentState] = None):
    if state is None:
      state = self.init_state(inputs.size(0), inputs.device)
    outputs = []
    for t in range(inputs.size(1)):
      log_probs, state = self.step(inputs[:, t], state)
      outputs.append(log_probs)
    return torch.stack(outputs, dim=1), state


def detach_state(state: RecurrentState) -> RecurrentState:
  return tuple((c.detach(), h.detach()) for c, h in state)


def make_model(cfg, vocab_size: int) -> CharLSTM:
  return CharLSTM(
    vocab_size=vocab_size,
    rnn_size=int(cfg.model.rnn_size),
    num_layers=int(cfg.model.num_layers),
    dropout=float(getattr(cfg.model, 'dropout', 0.0)),
  )
