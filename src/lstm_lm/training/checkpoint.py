# checkpoint save/load with vocabulary and architecture checks
import gzip
import io
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import torch
import torch.nn as nn
from omegaconf import OmegaConf
from rich.console import Console

from lstm_lm.data.vocab import CharVocab, VocabularyMismatchError

console = Console(highlight=False)

ARCH_KEYS = ('rnn_size', 'num_layers')
CHECKPOINT_PATTERN = re.compile(r'^lm_.+_epoch(\d+(?:\.\d+)?)_(\d+(?:\.\d+)?)\.pt(\.gz)?$')

PathLike = Union[str, Path]


def build_checkpoint_payload(
  model: nn.Module,
  optimizer,
  decay_controller,
  vocab: CharVocab,
  cfg_serializable: Dict[str, Any],
  iteration: int,
  epoch: float,
  train_losses: Dict[int, float],
  val_losses: Dict[int, float],
  val_loss: Optional[float],
) -> dict:
  payload = {
    'state_dict': model.state_dict(),
    'optimizer': optimizer.state_dict() if optimizer is not None else None,
    'vocab': vocab.to_dict(),
    'cfg': cfg_serializable,
    'iteration': int(iteration),
    'epoch': float(epoch),
    'train_losses': dict(train_losses),
    'val_losses': dict(val_losses),
  }
  if decay_controller is not None:
    payload['lr_decay'] = decay_controller.state_dict()
  if val_loss is not None:
    payload['val_loss'] = float(val_loss)
  return payload


def compress_file(path: Path) -> Path:
  target = path.with_name(path.name + '.gz')
  with path.open('rb') as src, gzip.open(target, 'wb') as dst:
    shutil.copyfileobj(src, dst)
  path.unlink()
  return target


class CheckpointManager:
  """Writes and reads training checkpoints inside one directory."""

  def __init__(self, directory: PathLike, savefile: str = 'lstm', compress: bool = False) -> None:
    self.directory = Path(directory)
    self.savefile = savefile
    self.compress = bool(compress)

  def checkpoint_path(self, epoch: float, val_loss: float) -> Path:
    return self.directory / f'lm_{self.savefile}_epoch{epoch:.2f}_{val_loss:.4f}.pt'

  def save(self, payload: dict, epoch: float, val_loss: float) -> Path:
    self.directory.mkdir(parents=True, exist_ok=True)
    path = self.checkpoint_path(epoch, val_loss)
    torch.save(payload, path)
    if self.compress:
      path = compress_file(path)
    console.print(f'[bold cyan]saving checkpoint to {path}[/bold cyan]')
    return path

  def load(self, path: PathLike, vocab: Optional[CharVocab] = None, map_location=None) -> dict:
    return load_checkpoint(path, vocab=vocab, map_location=map_location)

  def list_checkpoints(self) -> List[Tuple[float, Path]]:
    if not self.directory.exists():
      return []
    found: List[Tuple[float, Path]] = []
    for path in self.directory.iterdir():
      match = CHECKPOINT_PATTERN.match(path.name)
      if match and path.is_file() and path.name.startswith(f'lm_{self.savefile}_epoch'):
        found.append((float(match.group(1)), path))
    found.sort(key=lambda item: (item[0], item[1].stat().st_mtime))
    return found

  def latest(self) -> Optional[Path]:
    ckpts = self.list_checkpoints()
    return ckpts[-1][1] if ckpts else None


def load_checkpoint(path: PathLike, vocab: Optional[CharVocab] = None, map_location=None) -> dict:
  path = Path(path)
  if not path.exists():
    raise FileNotFoundError(f'checkpoint {path} not found')
  if path.suffix == '.gz':
    buffer = io.BytesIO(gzip.decompress(path.read_bytes()))
    data = torch.load(buffer, map_location=map_location)
  else:
    data = torch.load(path, map_location=map_location)
  if not isinstance(data, dict) or 'state_dict' not in data or 'vocab' not in data:
    raise ValueError(f'{path} is not a language model checkpoint')
  if vocab is not None:
    vocab.check_compatible(CharVocab.from_dict(data['vocab']))
  return data


def checkpoint_vocab(data: dict) -> CharVocab:
  return CharVocab.from_dict(data['vocab'])


def apply_checkpoint_overrides(cfg, data: dict) -> Dict[str, Any]:
  """Force the architecture hyperparameters stored in ``data`` onto ``cfg``.

  Returns the keys whose value changed, mapped to ``(old, new)``.
  """
  saved_model = (data.get('cfg') or {}).get('model') or {}
  changed: Dict[str, Any] = {}
  for key in ARCH_KEYS:
    if key not in saved_model:
      raise ValueError(f'checkpoint config is missing model.{key}')
    new_value = int(saved_model[key])
    old_value = OmegaConf.select(cfg, f'model.{key}')
    if old_value != new_value:
      changed[key] = (old_value, new_value)
    OmegaConf.update(cfg, f'model.{key}', new_value, merge=True)
  console.print(
    f"[bold yellow]overwriting rnn_size={cfg.model.rnn_size}, num_layers={cfg.model.num_layers} "
    "based on the checkpoint.[/bold yellow]"
  )
  return changed


__all__ = [
  'CheckpointManager',
  'VocabularyMismatchError',
  'apply_checkpoint_overrides',
  'build_checkpoint_payload',
  'checkpoint_vocab',
  'load_checkpoint',
]
