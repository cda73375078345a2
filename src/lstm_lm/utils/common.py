# small helpers
import math
import random

import torch
from rich.console import Console

console = Console(highlight=False)


def set_seed(seed: int) -> None:
  random.seed(seed)
  torch.manual_seed(seed)
  torch.cuda.manual_seed_all(seed)


def resolve_device(gpuid: int) -> torch.device:
  if gpuid < 0:
    return torch.device('cpu')
  if not torch.cuda.is_available():
    console.print('[bold yellow]CUDA requested but not available; falling back on CPU mode.[/bold yellow]')
    return torch.device('cpu')
  if gpuid >= torch.cuda.device_count():
    console.print(f'[bold yellow]GPU {gpuid} not found ({torch.cuda.device_count()} visible); using GPU 0.[/bold yellow]')
    gpuid = 0
  console.print(f'[grey70]using CUDA on GPU {gpuid}...[/grey70]')
  return torch.device('cuda', gpuid)


def format_eta(seconds: float) -> str:
  if math.isinf(seconds) or seconds <= 0:
    return '--h:--m'
  if seconds >= 3600:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours:02d}h:{minutes:02d}m"
  if seconds >= 60:
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes:02d}m:{secs:02d}s"
  secs = int(seconds + 0.5)
  return f"00m:{secs:02d}s"
