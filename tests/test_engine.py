# truncated BPTT engine tests
import pytest  # test decorators
import torch  # tensor helper
import torch.nn.functional as F  # reference loss

from lstm_lm.models.lstm import CharLSTM  # model under test
from lstm_lm.training.engine import TruncatedBPTTEngine, window_bounds  # engine under test
from lstm_lm.training.optim_factory import build_loss  # nll adapter


class StepRecorder:
  """Wraps ``model.step`` and keeps every input and output state."""

  def __init__(self, model: CharLSTM) -> None:
    self.model = model
    self.inputs = []
    self.outputs = []
    self._step = model.step
    model.step = self  # instance attribute shadows the bound method

  def __call__(self, input_ids, state):
    self.inputs.append(state)
    log_probs, new_state = self._step(input_ids, state)
    self.outputs.append(new_state)
    return log_probs, new_state


def make_engine(seq_length: int = 3, grad_clip: float = 5.0, lr: float = 1e-2):
  torch.manual_seed(0)
  model = CharLSTM(3, rnn_size=8, num_layers=2)  # vocabulary {a, b, c}
  optimizer = torch.optim.RMSprop(model.parameters(), lr=lr, alpha=0.95, eps=1e-8)
  engine = TruncatedBPTTEngine(model, optimizer, build_loss(), seq_length=seq_length, grad_clip=grad_clip)
  return model, engine


def make_batch(batch_size: int = 2, steps: int = 7):
  torch.manual_seed(1)
  row = torch.randint(0, 3, (batch_size, steps + 1))
  return row[:, :-1], row[:, 1:]


def test_window_bounds() -> None:
  assert window_bounds(7, 3) == [(0, 3), (3, 6), (6, 7)]
  assert window_bounds(6, 3) == [(0, 3), (3, 6)]
  assert window_bounds(2, 5) == [(0, 2)]
  with pytest.raises(ValueError):
    window_bounds(4, 0)


def test_seven_steps_run_three_windows_with_state_carried() -> None:
  model, engine = make_engine(seq_length=3)
  backward_passes = []
  model.decoder.weight.register_hook(lambda grad: backward_passes.append(1))  # fires once per backward()
  recorder = StepRecorder(model)
  x, y = make_batch(batch_size=2, steps=7)

  result = engine.feval(x, y)

  assert result.window_lengths == [3, 3, 1]
  assert len(backward_passes) == 3
  assert len(recorder.inputs) == 7
  for boundary in (3, 6):  # first step of windows 2 and 3
    carried = recorder.inputs[boundary]
    produced = recorder.outputs[boundary - 1]
    for (c_in, h_in), (c_out, h_out) in zip(carried, produced):
      assert torch.equal(c_in, c_out)
      assert torch.equal(h_in, h_out)
      assert not h_in.requires_grad  # value crosses the boundary, gradient does not
  for c, h in recorder.inputs[0]:
    assert torch.count_nonzero(c) == 0
    assert torch.count_nonzero(h) == 0


def test_state_threads_across_batches() -> None:
  model, engine = make_engine(seq_length=3)
  recorder = StepRecorder(model)
  x, y = make_batch(batch_size=2, steps=7)
  engine.train_step((x, y))
  last = recorder.outputs[-1]
  engine.train_step((x, y))
  first_of_next = recorder.inputs[7]
  for (c_in, h_in), (c_out, h_out) in zip(first_of_next, last):
    assert torch.equal(c_in, c_out)
    assert torch.equal(h_in, h_out)
  assert torch.count_nonzero(first_of_next[0][1]) > 0


def test_state_resets_when_batch_size_changes() -> None:
  _, engine = make_engine()
  engine.feval(*make_batch(batch_size=2, steps=4))
  engine.feval(*make_batch(batch_size=3, steps=4))
  assert engine.state[0][0].shape == (3, 8)


def test_loss_is_normalized_by_timesteps() -> None:
  model, engine = make_engine(seq_length=3)
  x, y = make_batch(batch_size=2, steps=7)
  with torch.no_grad():
    state = model.init_state(2)
    total = 0.0
    for t in range(7):
      log_probs, state = model.step(x[:, t], state)
      total += float(F.nll_loss(log_probs, y[:, t]))
  result = engine.feval(x, y)
  assert result.loss == pytest.approx(total / 7, rel=1e-5)


def test_gradients_are_clipped_elementwise() -> None:
  model, engine = make_engine(grad_clip=1e-3)
  result = engine.feval(*make_batch(batch_size=2, steps=7))
  for param in model.parameters():
    assert param.grad is not None
    bound = torch.tensor(1e-3, dtype=param.grad.dtype)  # clamp happens in the gradient dtype
    assert param.grad.abs().max() <= bound
  assert result.grad_norm > 0
  assert result.param_norm > 0


def test_gradients_are_zeroed_each_feval() -> None:
  model, engine = make_engine(grad_clip=0.0)
  batch = make_batch(batch_size=2, steps=3)
  engine.reset_state(2)
  engine.feval(*batch)
  first = [p.grad.clone() for p in model.parameters()]
  engine.reset_state(2)
  engine.feval(*batch)
  for before, param in zip(first, model.parameters()):
    assert torch.allclose(before, param.grad)  # not doubled by accumulation


def test_train_step_updates_parameters() -> None:
  model, engine = make_engine(lr=1e-2)
  before = [p.detach().clone() for p in model.parameters()]
  engine.train_step(make_batch())
  changed = any(not torch.equal(b, p) for b, p in zip(before, model.parameters()))
  assert changed
