"""Padded line-split minibatch source for character-level training."""  # module summary

import json  # vocab cache serialization
import math  # split size arithmetic
from pathlib import Path  # filesystem path utilities
from typing import Dict, List, Optional, Sequence, Tuple  # type hints for clarity

import torch  # tensor creation for batches
from rich.console import Console  # console reporting shared with the trainer

from .vocab import CharVocab  # frozen character vocabulary

console = Console(highlight=False)

TRAIN = 1  # split id for training batches
VAL = 2  # split id for validation batches
TEST = 3  # split id for held-out test batches
SPLITS = (TRAIN, VAL, TEST)  # ordered split ids

INPUT_FILE = 'input.txt'  # corpus file expected inside the data directory
VOCAB_FILE = 'vocab.json'  # cached vocabulary mapping
TENSOR_FILE = 'data.pt'  # cached encoded corpus

Batch = Tuple[torch.Tensor, torch.Tensor]  # (inputs, targets) pair of (B, S) id tensors


class CorpusError(ValueError):
  """Raised when the corpus cannot be turned into training batches."""


def split_fractions(train_frac: float, val_frac: float) -> Tuple[float, float, float]:
  if not 0.0 <= train_frac <= 1.0 or not 0.0 <= val_frac <= 1.0:
    raise ValueError('train_frac and val_frac must lie in [0, 1]')
  if train_frac + val_frac > 1.0 + 1e-9:
    raise ValueError(f'train_frac + val_frac must not exceed 1 (got {train_frac + val_frac:.4f})')
  test_frac = max(0.0, 1.0 - (train_frac + val_frac))  # test split takes the remainder
  return train_frac, val_frac, test_frac


def read_corpus(path: Path) -> str:
  if not path.exists():  # verify the corpus exists before proceeding
    raise CorpusError(f'{INPUT_FILE} not found at {path}')
  try:
    text = path.read_text(encoding='utf-8')  # decode corpus as utf-8
  except UnicodeDecodeError as exc:
    raise CorpusError(f'corpus {path} is not valid utf-8: {exc}') from exc
  if not text.strip():  # reject corpora without any content
    raise CorpusError(f'corpus {path} is empty')
  if not text.endswith('\n'):  # every line ends with a newline so padding has a symbol to use
    text += '\n'
  return text


def prepare_corpus(data_dir: Path) -> Tuple[CharVocab, torch.Tensor]:
  """Encode ``input.txt`` once and cache the vocabulary and id tensor.

  The cache is rebuilt whenever the corpus is newer than either cached file.
  """
  input_path = data_dir / INPUT_FILE
  vocab_path = data_dir / VOCAB_FILE
  tensor_path = data_dir / TENSOR_FILE
  if not input_path.exists():
    raise CorpusError(f'{INPUT_FILE} not found in {data_dir}')

  stale = not vocab_path.exists() or not tensor_path.exists()
  if not stale:
    corpus_mtime = input_path.stat().st_mtime
    stale = vocab_path.stat().st_mtime < corpus_mtime or tensor_path.stat().st_mtime < corpus_mtime

  if stale:
    console.print(f'[grey58]one-time setup: preprocessing {input_path}...[/grey58]')
    text = read_corpus(input_path)
    vocab = CharVocab.from_text(text)
    data = torch.tensor(vocab.encode(text), dtype=torch.long)
    with vocab_path.open('w', encoding='utf-8') as handle:
      json.dump(vocab.to_dict(), handle, ensure_ascii=False)
    torch.save(data, tensor_path)
    return vocab, data

  console.print(f'[grey58]loading cached corpus from {tensor_path}[/grey58]')
  with vocab_path.open('r', encoding='utf-8') as handle:
    vocab = CharVocab.from_dict(json.load(handle))
  data = torch.load(tensor_path)
  return vocab, data


def split_lines(data: torch.Tensor, newline_id: int, max_line_length: int = 0) -> List[torch.Tensor]:
  """Cut the encoded corpus into per-line samples, each ending in a newline."""
  ends = (data == newline_id).nonzero(as_tuple=True)[0].tolist()  # positions of every newline
  segments: List[torch.Tensor] = []
  start = 0
  for end in ends:
    line = data[start:end + 1]  # keep the trailing newline as the last target
    start = end + 1
    if line.numel() < 2:  # blank lines carry no input/target pair
      continue
    if max_line_length > 0 and line.numel() > max_line_length + 1:
      for offset in range(0, line.numel() - 1, max_line_length):
        chunk = line[offset:offset + max_line_length + 1]  # overlap by one so targets continue
        if chunk.numel() >= 2:
          segments.append(chunk)
    else:
      segments.append(line)
  return segments


def pad_lines(lines: Sequence[torch.Tensor], pad_id: int) -> Batch:
  width = max(line.numel() for line in lines)  # longest row in this batch
  rows = torch.full((len(lines), width), pad_id, dtype=torch.long)  # pad with the newline id
  for idx, line in enumerate(lines):
    rows[idx, :line.numel()] = line
  x = rows[:, :-1].contiguous()  # inputs drop the final position
  y = rows[:, 1:].contiguous()  # targets are the inputs shifted by one
  return x, y


class LineSplitLoader:
  """Serves padded line batches for the train, val, and test splits.

  Each split owns its own cursor; ``next_batch`` cycles through the split and
  ``reset_batch_pointer`` rewinds it to the front.
  """

  def __init__(self, batches: List[Batch], vocab: CharVocab, fractions: Tuple[float, float, float]) -> None:
    if not batches:
      raise CorpusError('corpus is too small to form a single batch')
    self.vocab = vocab
    self.vocab_size = len(vocab)
    n = len(batches)
    train_frac, val_frac, _ = fractions
    ntrain = int(math.floor(n * train_frac))
    nval = int(math.floor(n * val_frac))
    if val_frac > 0 and nval == 0 and ntrain > 1:  # keep at least one validation batch when requested
      nval = 1
      ntrain -= 1
    ntest = n - ntrain - nval
    if ntrain <= 0:
      raise CorpusError(f'no training batches: {n} batches total with train_frac={train_frac}')
    self._splits: Dict[int, List[Batch]] = {
      TRAIN: batches[:ntrain],
      VAL: batches[ntrain:ntrain + nval],
      TEST: batches[ntrain + nval:ntrain + nval + ntest],
    }
    self.split_sizes: Dict[int, int] = {split: len(items) for split, items in self._splits.items()}
    self._pointers: Dict[int, int] = {split: 0 for split in SPLITS}
    console.print(
      f'[grey70]data load done. number of batches in train: {ntrain}, val: {nval}, test: {ntest}[/grey70]'
    )

  @classmethod
  def from_directory(
    cls,
    data_dir,
    batch_size: int,
    fractions: Tuple[float, float, float],
    max_line_length: int = 0,
  ) -> 'LineSplitLoader':
    if batch_size <= 0:
      raise ValueError('batch size must be positive')
    data_path = Path(data_dir)
    if not data_path.is_dir():
      raise CorpusError(f'data directory {data_path} does not exist')
    vocab, data = prepare_corpus(data_path)
    if '\n' not in vocab:
      raise CorpusError(f'cached vocabulary in {data_path} has no newline symbol; delete the cache and retry')
    newline_id = vocab.stoi['\n']
    lines = split_lines(data, newline_id, max_line_length=max_line_length)
    usable = (len(lines) // batch_size) * batch_size  # trailing partial batch is dropped
    batches = [pad_lines(lines[start:start + batch_size], newline_id) for start in range(0, usable, batch_size)]
    return cls(batches, vocab, fractions)

  @property
  def ntrain(self) -> int:
    return self.split_sizes[TRAIN]

  def split_size(self, split: int) -> int:
    return self.split_sizes[self._check_split(split)]

  def reset_batch_pointer(self, split: int, position: int = 0) -> None:
    self._pointers[self._check_split(split)] = position

  def next_batch(self, split: int) -> Batch:
    split = self._check_split(split)
    items = self._splits[split]
    if not items:
      raise CorpusError(f'split {split} has no batches')
    idx = self._pointers[split]
    if idx >= len(items):  # cycle around to the start of the split
      idx = 0
    self._pointers[split] = idx + 1
    return items[idx]

  def iter_split(self, split: int, max_batches: Optional[int] = None):
    """Yield every batch of ``split`` once, starting from the front."""
    split = self._check_split(split)
    self.reset_batch_pointer(split)
    total = self.split_sizes[split] if max_batches is None else min(max_batches, self.split_sizes[split])
    for _ in range(total):
      yield self.next_batch(split)

  @staticmethod
  def _check_split(split: int) -> int:
    if split not in SPLITS:
      raise ValueError(f'unknown split {split}; expected one of {SPLITS}')
    return split
