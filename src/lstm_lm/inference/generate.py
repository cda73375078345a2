"""Greedy character generation helper and CLI for LSTM-LM."""  # module summary

import argparse  # CLI parsing
from pathlib import Path  # filesystem path utilities
from typing import Optional  # optional type hints

import torch  # tensor ops
from omegaconf import OmegaConf  # config reconstruction from checkpoints

from lstm_lm.data.vocab import CharVocab  # vocabulary type
from lstm_lm.models.lstm import CharLSTM, make_model  # model builder
from lstm_lm.training.checkpoint import checkpoint_vocab, load_checkpoint  # checkpoint helpers
from lstm_lm.utils.common import resolve_device, set_seed  # device and seeding helpers


def _next_token(log_probs: torch.Tensor, temperature: float) -> torch.Tensor:
  if temperature <= 0:  # argmax is the deterministic default
    return log_probs.argmax(dim=-1)
  probs = torch.softmax(log_probs / temperature, dim=-1)  # rescale the distribution
  return torch.multinomial(probs, num_samples=1).squeeze(-1)


@torch.no_grad()  # disable grad for inference
def sample_sequence(
  model: CharLSTM,
  vocab: CharVocab,
  length: int,
  seed_char: Optional[str] = None,
  device: Optional[torch.device] = None,
  temperature: float = 0.0,
) -> str:
  """Generate exactly ``length`` characters after ``seed_char``.

  Starts from the zero state with batch size 1 and feeds each prediction back
  as the next input. With ``temperature == 0`` the highest-probability
  character is always chosen, so the output is reproducible.
  """
  if length < 0:
    raise ValueError('length must be non-negative')
  if seed_char is None or seed_char == '':  # default seed is the first vocabulary symbol
    seed_char = vocab.itos[0]
  if len(seed_char) != 1:
    raise ValueError(f'seed must be a single character, got {seed_char!r}')
  dev = device if device is not None else next(model.parameters()).device  # normalize device handle
  was_training = model.training  # remember mode so training resumes unchanged
  model.eval()  # switch to eval mode
  prev = torch.tensor(vocab.encode(seed_char), dtype=torch.long, device=dev)  # (1,) seed id
  state = model.init_state(1, dev)  # fresh zero state
  generated = []  # collected ids
  try:
    for _ in range(length):  # iterate decoding steps
      log_probs, state = model.step(prev, state)  # one step forward
      prev = _next_token(log_probs, temperature)  # choose next id
      generated.append(int(prev.item()))  # keep it
  finally:
    model.train(was_training)
  return vocab.decode(generated)  # decode continuation only


def main() -> None:
  ap = argparse.ArgumentParser(description='Sample text from a trained LSTM-LM checkpoint')  # CLI description
  ap.add_argument('checkpoint', help='Path to a checkpoint (.pt or .pt.gz)')  # checkpoint path
  ap.add_argument('--length', type=int, default=2000, help='Number of characters to generate')  # generation length
  ap.add_argument('--seed_char', default=None, help='Character to start generation from (default: first vocab symbol)')
  ap.add_argument('--temperature', type=float, default=0.0, help='Softmax temperature; 0 = argmax (default)')
  ap.add_argument('--seed', type=int, default=123, help='Random seed used when temperature > 0')
  ap.add_argument('--gpuid', type=int, default=-1, help='GPU to use; -1 = CPU')
  args = ap.parse_args()  # parse CLI args

  checkpoint_path = Path(args.checkpoint)  # normalize checkpoint path
  device = resolve_device(args.gpuid)  # resolve desired device with CPU fallback
  set_seed(args.seed)  # seed stochastic sampling
  data = load_checkpoint(checkpoint_path, map_location=device)  # load checkpoint with resolved device
  cfg = OmegaConf.create(data['cfg'])  # reconstruct config from checkpoint snapshot
  vocab = checkpoint_vocab(data)  # vocabulary saved with the weights
  model = make_model(cfg, len(vocab)).to(device)  # instantiate model on target device
  model.load_state_dict(data['state_dict'])  # populate model parameters

  text = sample_sequence(
    model,
    vocab,
    args.length,
    seed_char=args.seed_char,
    device=device,
    temperature=args.temperature,
  )  # run generation
  print((args.seed_char or vocab.itos[0]) + text)  # emit result


if __name__ == '__main__':
  main()  # invoke CLI
