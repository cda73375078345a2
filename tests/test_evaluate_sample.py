# evaluator and greedy sampler tests
import pytest  # test decorators
import torch  # tensor helper
import torch.nn.functional as F  # reference loss

from lstm_lm.data import VAL, TRAIN, CharVocab, LineSplitLoader, split_fractions  # data layer
from lstm_lm.inference.generate import sample_sequence  # sampler under test
from lstm_lm.models.lstm import CharLSTM  # model
from lstm_lm.training.engine import TruncatedBPTTEngine  # engine for state isolation checks
from lstm_lm.training.evaluate import evaluate_split  # evaluator under test
from lstm_lm.training.optim_factory import build_loss  # nll adapter


@pytest.fixture
def loader(corpus_dir):
  return LineSplitLoader.from_directory(corpus_dir, 4, split_fractions(0.5, 0.25))


def reference_loss(model, loader, split) -> float:
  total, steps = 0.0, 0
  with torch.no_grad():
    for x, y in loader.iter_split(split):
      state = model.init_state(x.size(0))  # zero state for every batch
      for t in range(x.size(1)):
        log_probs, state = model.step(x[:, t], state)
        total += float(F.nll_loss(log_probs, y[:, t]))
      steps += x.size(1)
  return total / steps


def test_evaluator_starts_every_batch_from_zero(loader) -> None:
  torch.manual_seed(0)
  model = CharLSTM(loader.vocab_size, rnn_size=8, num_layers=2)
  model.eval()
  expected = reference_loss(model, loader, VAL)
  model.train()
  assert evaluate_split(model, loader, VAL) == pytest.approx(expected, rel=1e-6)
  assert model.training  # mode restored


def test_evaluator_leaves_parameters_and_engine_state_alone(loader) -> None:
  torch.manual_seed(0)
  model = CharLSTM(loader.vocab_size, rnn_size=8, num_layers=2, dropout=0.3)
  optimizer = torch.optim.RMSprop(model.parameters(), lr=1e-2)
  engine = TruncatedBPTTEngine(model, optimizer, build_loss(), seq_length=3)
  engine.train_step(loader.next_batch(TRAIN))
  carried = [(c.clone(), h.clone()) for c, h in engine.state]
  params = [p.detach().clone() for p in model.parameters()]

  first = evaluate_split(model, loader, VAL)
  second = evaluate_split(model, loader, VAL)

  assert first == second  # dropout is off during evaluation
  for before, param in zip(params, model.parameters()):
    assert torch.equal(before, param)
  for (c0, h0), (c1, h1) in zip(carried, engine.state):
    assert torch.equal(c0, c1)
    assert torch.equal(h0, h1)


def test_evaluator_respects_max_batches(loader) -> None:
  model = CharLSTM(loader.vocab_size, rnn_size=4, num_layers=1)
  x, y = loader.iter_split(TRAIN).__next__()
  with torch.no_grad():
    state = model.init_state(x.size(0))
    total = 0.0
    for t in range(x.size(1)):
      log_probs, state = model.step(x[:, t], state)
      total += float(F.nll_loss(log_probs, y[:, t]))
  assert evaluate_split(model, loader, TRAIN, max_batches=1) == pytest.approx(total / x.size(1), rel=1e-6)


def test_sampler_is_greedy_and_exact_length() -> None:
  torch.manual_seed(3)
  vocab = CharVocab.from_text('abc\n')
  model = CharLSTM(len(vocab), rnn_size=8, num_layers=2, dropout=0.5)
  text = sample_sequence(model, vocab, 12, seed_char='a')
  assert len(text) == 12
  assert set(text) <= set('abc\n')
  assert sample_sequence(model, vocab, 12, seed_char='a') == text
  assert model.training

  model.eval()
  with torch.no_grad():
    state = model.init_state(1)
    prev = torch.tensor(vocab.encode('a'))
    expected = []
    for _ in range(12):
      log_probs, state = model.step(prev, state)
      prev = log_probs.argmax(dim=-1)
      expected.append(int(prev))
  assert text == vocab.decode(expected)


def test_sampler_defaults_to_first_symbol_and_zero_length() -> None:
  vocab = CharVocab.from_text('xy')
  model = CharLSTM(len(vocab), rnn_size=4, num_layers=1)
  assert sample_sequence(model, vocab, 0) == ''
  assert sample_sequence(model, vocab, 3) == sample_sequence(model, vocab, 3, seed_char='x')
  with pytest.raises(ValueError):
    sample_sequence(model, vocab, 3, seed_char='xy')
