# trainer with console reporting, periodic validation, and checkpointing
import gc
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from omegaconf import DictConfig, OmegaConf
from rich.console import Console

from lstm_lm.data.loader import TEST, TRAIN, VAL, LineSplitLoader, split_fractions
from lstm_lm.data.vocab import CharVocab
from lstm_lm.inference.generate import sample_sequence
from lstm_lm.models.lstm import CharLSTM, make_model
from lstm_lm.training.checkpoint import (
  CheckpointManager,
  apply_checkpoint_overrides,
  build_checkpoint_payload,
  load_checkpoint,
)
from lstm_lm.training.engine import StepResult, TruncatedBPTTEngine
from lstm_lm.training.evaluate import evaluate_split
from lstm_lm.training.optim_factory import (
  EpochDecayController,
  build_decay_controller,
  build_loss,
  build_optimizer,
  canonical_name,
)
from lstm_lm.utils.common import format_eta, resolve_device, set_seed

console = Console(highlight=False)

DEFAULT_CONFIG = Path(__file__).parent.parent / 'configs' / 'default.yaml'

# CLI flag -> config key
CLI_OVERRIDES = {
  'data_dir': 'data.data_dir',
  'train_frac': 'data.train_frac',
  'val_frac': 'data.val_frac',
  'rnn_size': 'model.rnn_size',
  'num_layers': 'model.num_layers',
  'dropout': 'model.dropout',
  'learning_rate': 'optim.lr',
  'learning_rate_decay': 'optim.lr_decay',
  'learning_rate_decay_after': 'optim.lr_decay_after',
  'decay_rate': 'optim.decay_rate',
  'optimizer': 'optim.name',
  'seq_length': 'train.seq_length',
  'batch_size': 'train.batch_size',
  'max_epochs': 'train.max_epochs',
  'grad_clip': 'train.grad_clip',
  'seed': 'train.seed',
  'print_every': 'train.print_every',
  'eval_val_every': 'train.eval_val_every',
  'init_from': 'train.init_from',
  'gpuid': 'train.gpuid',
  'checkpoint_dir': 'checkpoint.dir',
  'savefile': 'checkpoint.savefile',
}


def apply_overrides(cfg: DictConfig, entries: Optional[Sequence[str]]) -> DictConfig:
  for entry in entries or []:
    if '=' not in entry:
      raise ValueError(f"Invalid override '{entry}'; expected key=value format")
    key, value_str = entry.split('=', 1)
    try:
      value = yaml.safe_load(value_str)
    except yaml.YAMLError:
      value = value_str
    OmegaConf.update(cfg, key.strip(), value, merge=True)
  return cfg


def load_config(path: Optional[str] = None, overrides: Optional[Sequence[str]] = None) -> DictConfig:
  cfg = OmegaConf.load(path) if path else OmegaConf.load(DEFAULT_CONFIG)
  if path:  # user configs only need to name the keys they change
    cfg = OmegaConf.merge(OmegaConf.load(DEFAULT_CONFIG), cfg)
  return apply_overrides(cfg, overrides)


def validate_config(cfg: DictConfig) -> None:
  for key in ('model.rnn_size', 'model.num_layers', 'train.seq_length', 'train.batch_size', 'train.max_epochs',
              'train.print_every', 'train.eval_val_every'):
    if int(OmegaConf.select(cfg, key)) <= 0:
      raise ValueError(f'{key} must be positive')
  if float(cfg.optim.lr) <= 0:
    raise ValueError('learning rate must be positive')
  if not 0.0 <= float(cfg.model.dropout) < 1.0:
    raise ValueError('model.dropout must lie in [0, 1)')
  split_fractions(float(cfg.data.train_frac), float(cfg.data.val_frac))


def write_config(path: Path, cfg_serializable) -> None:
  try:
    cfg_node = OmegaConf.create(cfg_serializable)
    OmegaConf.save(cfg_node, path)
  except OSError as exc:
    console.print(f'[bold red]Failed to write config {path}: {exc}[/bold red]')


class DivergenceGuard:
  """Flags a run whose loss grows past ``factor`` times its first loss."""

  def __init__(self, factor: float = 3.0) -> None:
    self.factor = float(factor)
    self.loss0: Optional[float] = None

  def check(self, loss: float) -> bool:
    if not math.isfinite(loss):
      return True
    if self.loss0 is None:
      self.loss0 = loss
    return self.factor > 0 and loss > self.loss0 * self.factor


@dataclass
class TrainResult:
  iterations: int
  last_iteration: int
  diverged: bool = False
  train_losses: Dict[int, float] = field(default_factory=dict)
  val_losses: Dict[int, float] = field(default_factory=dict)
  test_loss: Optional[float] = None
  checkpoints: List[Path] = field(default_factory=list)


class Trainer:
  def __init__(
    self,
    cfg: DictConfig,
    model: CharLSTM,
    engine: TruncatedBPTTEngine,
    loader: LineSplitLoader,
    vocab: CharVocab,
    *,
    decay: Optional[EpochDecayController] = None,
    checkpoints: Optional[CheckpointManager] = None,
    start_iteration: int = 0,
    train_losses: Optional[Dict[int, float]] = None,
    val_losses: Optional[Dict[int, float]] = None,
  ) -> None:
    self.cfg = cfg
    self.model = model
    self.engine = engine
    self.loader = loader
    self.vocab = vocab
    self.decay = decay
    self.checkpoints = checkpoints
    self.start_iteration = int(start_iteration)
    self.train_losses: Dict[int, float] = dict(train_losses or {})
    self.val_losses: Dict[int, float] = dict(val_losses or {})
    self.guard = DivergenceGuard(float(cfg.train.get('divergence_factor', 3.0)))
    self.cfg_serializable = OmegaConf.to_container(cfg, resolve=True)

  @property
  def iterations(self) -> int:
    return int(self.cfg.train.max_epochs) * self.loader.ntrain

  def evaluate(self, split: int = VAL) -> Optional[float]:
    if self.loader.split_size(split) == 0:
      return None
    console.print(f'[grey58]evaluating loss over split index {split}[/grey58]')
    return evaluate_split(self.model, self.loader, split)

  def sample(self) -> str:
    text = sample_sequence(
      self.model,
      self.vocab,
      int(self.cfg.sample.length),
      seed_char=self.cfg.sample.get('seed_char') or None,
    )
    console.print('[grey58]evaluate some test sequence[/grey58]')
    console.print(text, markup=False)
    return text

  def save(self, iteration: int, epoch: float, val_loss: float) -> Path:
    payload = build_checkpoint_payload(
      self.model,
      self.engine.optimizer,
      self.decay,
      self.vocab,
      self.cfg_serializable,
      iteration,
      epoch,
      self.train_losses,
      self.val_losses,
      val_loss,
    )
    return self.checkpoints.save(payload, epoch, val_loss)

  def log_progress(self, iteration: int, epoch: float, result: StepResult, elapsed: float, eta: str) -> None:
    console.print(
      f'[grey70]{iteration}/{self.iterations}[/grey70] (epoch {epoch:.3f}), '
      f'[chartreuse4]train_loss = {result.loss:6.8f}[/chartreuse4], '
      f'[steel_blue]grad/param norm = {result.grad_param_ratio:6.4e}[/steel_blue], '
      f'[medium_spring_green]time/batch = {elapsed:.2f}s[/medium_spring_green] '
      f'[orchid]eta {eta}[/orchid]',
      soft_wrap=False,
      overflow='crop',
    )

  def run(self) -> TrainResult:
    ntrain = self.loader.ntrain
    iterations = self.iterations
    eval_every = int(self.cfg.train.eval_val_every)
    print_every = int(self.cfg.train.print_every)
    save_model = bool(self.cfg.checkpoint.save_model) and self.checkpoints is not None
    result = TrainResult(iterations=iterations, last_iteration=self.start_iteration)

    if self.start_iteration >= iterations:
      console.print(f'[bold green]All {iterations} iterations already completed; exiting.[/bold green]')
      result.train_losses = self.train_losses
      result.val_losses = self.val_losses
      return result

    if self.start_iteration == 0:
      val_loss = self.evaluate(VAL)
      if val_loss is not None:
        self.val_losses[0] = val_loss
        console.print(f'[orchid]initial validation loss is {val_loss}[/orchid]')

    run_start = time.time()
    for i in range(self.start_iteration + 1, iterations + 1):
      epoch = i / ntrain

      timer = time.time()
      step = self.engine.train_step(self.loader.next_batch(TRAIN))
      elapsed = time.time() - timer

      self.train_losses[i] = step.loss
      result.last_iteration = i

      if i % ntrain == 0 and self.decay is not None:
        new_lr = self.decay.epoch_end(epoch)
        if new_lr is not None:
          console.print(f'[dark_orange3]decayed learning rate by a factor {self.decay.decay} to {new_lr}[/dark_orange3]')

      if i % eval_every == 0 or i == iterations:
        val_loss = self.evaluate(VAL)
        if val_loss is not None:
          self.val_losses[i] = val_loss
          console.print(f'[orchid]validation loss at {i} is {val_loss}[/orchid]')
        self.sample()
        if i != 1 and save_model:
          result.checkpoints.append(self.save(i, epoch, val_loss if val_loss is not None else step.loss))

      if i % print_every == 0:
        done = i - self.start_iteration
        per_step = (time.time() - run_start) / done
        self.log_progress(i, epoch, step, elapsed, format_eta(per_step * (iterations - i)))

      if i % 10 == 0:
        gc.collect()

      if self.guard.check(step.loss):
        console.print('[bold red]loss is exploding, aborting.[/bold red]')
        result.diverged = True
        break

    if not result.diverged:
      result.test_loss = self.evaluate(TEST)
      if result.test_loss is not None:
        console.print(f'[orchid]test loss is {result.test_loss}[/orchid]')
    result.train_losses = self.train_losses
    result.val_losses = self.val_losses
    return result


def resolve_init_from(cfg: DictConfig) -> str:
  """Return the checkpoint to resume from, or '' for a fresh run.

  ``latest`` picks the highest-epoch checkpoint already in ``checkpoint.dir``.
  """
  init_from = str(cfg.train.get('init_from') or '')
  if init_from != 'latest':
    return init_from
  latest = CheckpointManager(cfg.checkpoint.dir, savefile=cfg.checkpoint.savefile).latest()
  if latest is None:
    raise FileNotFoundError(f'no checkpoints to resume from in {cfg.checkpoint.dir}')
  return str(latest)


def build_trainer(cfg: DictConfig) -> Trainer:
  validate_config(cfg)
  set_seed(int(cfg.train.seed))
  fractions = split_fractions(float(cfg.data.train_frac), float(cfg.data.val_frac))
  loader = LineSplitLoader.from_directory(
    cfg.data.data_dir,
    int(cfg.train.batch_size),
    fractions,
    max_line_length=int(cfg.data.get('max_line_length', 0) or 0),
  )
  vocab = loader.vocab
  console.print(f'[grey70]vocab size: {len(vocab)}[/grey70]')

  device = resolve_device(int(cfg.train.gpuid))

  checkpoint: Optional[Dict[str, Any]] = None
  init_from = resolve_init_from(cfg)
  if init_from:
    console.print(f'[bold cyan]loading an LSTM from checkpoint {init_from}[/bold cyan]')
    checkpoint = load_checkpoint(init_from, vocab=vocab, map_location=device)
    apply_checkpoint_overrides(cfg, checkpoint)
  else:
    console.print(f'[grey70]creating an LSTM with {cfg.model.num_layers} layers[/grey70]')

  model = make_model(cfg, len(vocab)).to(device)
  if checkpoint is not None:
    model.load_state_dict(checkpoint['state_dict'])
  n_params = sum(p.numel() for p in model.parameters())
  console.print(f'[grey70]number of parameters in the model: {n_params}[/grey70]')

  base_lr = float(cfg.optim.lr)
  optimizer, optimizer_name, optimizer_kwargs = build_optimizer(model, base_lr=base_lr, cfg=cfg.optim)
  console.print(f'[grey70]Using optimizer {optimizer_name} (base lr {base_lr:.6f}).[/grey70]')
  if optimizer_kwargs:
    console.print(f'[grey50]Optimizer kwargs: {optimizer_kwargs}[/grey50]')
  decay = build_decay_controller(optimizer, base_lr=base_lr, cfg=cfg.optim)

  start_iteration = 0
  train_losses: Dict[int, float] = {}
  val_losses: Dict[int, float] = {}
  if checkpoint is not None:
    saved_optim = canonical_name(((checkpoint.get('cfg') or {}).get('optim') or {}).get('name'))
    if checkpoint.get('optimizer') is not None and saved_optim == optimizer_name:
      optimizer.load_state_dict(checkpoint['optimizer'])
    if checkpoint.get('lr_decay') is not None:
      decay.load_state_dict(checkpoint['lr_decay'])
    start_iteration = int(checkpoint.get('iteration', 0))
    train_losses = dict(checkpoint.get('train_losses') or {})
    val_losses = dict(checkpoint.get('val_losses') or {})
    loader.reset_batch_pointer(TRAIN, start_iteration % loader.ntrain)
    console.print(f'[bold yellow]Resuming from {init_from} (iteration {start_iteration})[/bold yellow]')

  engine = TruncatedBPTTEngine(
    model,
    optimizer,
    build_loss(),
    seq_length=int(cfg.train.seq_length),
    grad_clip=float(cfg.train.grad_clip),
    device=device,
  )

  checkpoints = None
  if cfg.checkpoint.dir:
    checkpoints = CheckpointManager(cfg.checkpoint.dir, savefile=cfg.checkpoint.savefile, compress=bool(cfg.checkpoint.compress))
    checkpoints.directory.mkdir(parents=True, exist_ok=True)
    write_config(checkpoints.directory / 'config.yaml', OmegaConf.to_container(cfg, resolve=True))

  return Trainer(
    cfg,
    model,
    engine,
    loader,
    vocab,
    decay=decay,
    checkpoints=checkpoints,
    start_iteration=start_iteration,
    train_losses=train_losses,
    val_losses=val_losses,
  )


def main(argv: Optional[Sequence[str]] = None) -> TrainResult:
  import argparse

  parser = argparse.ArgumentParser(description='Train a character-level language model')
  parser.add_argument('--config', default=None, help='YAML config (defaults to the packaged default.yaml)')
  parser.add_argument('--override', action='append', default=None, help='Dot-path override (e.g. model.dropout=0.5). Repeatable.')
  for flag, key in CLI_OVERRIDES.items():
    parser.add_argument(f'--{flag}', default=None, help=f'Override {key}')
  args = parser.parse_args(argv)

  entries = [f'{key}={getattr(args, flag)}' for flag, key in CLI_OVERRIDES.items() if getattr(args, flag) is not None]
  cfg = load_config(args.config, entries + list(args.override or []))
  trainer = build_trainer(cfg)
  return trainer.run()


if __name__ == '__main__':
  main()
