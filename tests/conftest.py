# shared fixtures: a tiny corpus and a config pointing at it
import pytest  # fixture decorator
import torch  # seeding
from omegaconf import OmegaConf  # config helper

from lstm_lm.training.train import load_config  # packaged defaults + overrides

WORDS = ['abc', 'cab', 'bca', 'aabbcc', 'cba', 'abcabcab']


def corpus_text(n_lines: int = 48) -> str:
  return ''.join(WORDS[k % len(WORDS)] + '\n' for k in range(n_lines))  # lines of a/b/c only


@pytest.fixture
def corpus_dir(tmp_path):
  data_dir = tmp_path / 'data'  # isolated corpus directory
  data_dir.mkdir()
  (data_dir / 'input.txt').write_text(corpus_text(), encoding='utf-8')
  return data_dir


@pytest.fixture
def tiny_cfg(tmp_path, corpus_dir):
  torch.manual_seed(0)  # deterministic parameter init
  return load_config(None, [
    f'data.data_dir={corpus_dir}',
    'data.train_frac=0.75',
    'data.val_frac=0.125',
    'model.rnn_size=8',
    'model.num_layers=2',
    'train.seq_length=3',
    'train.batch_size=4',
    'train.max_epochs=2',
    'train.print_every=1',
    'train.eval_val_every=4',
    'train.gpuid=-1',
    f'checkpoint.dir={tmp_path / "cv"}',
    'checkpoint.compress=false',
    'sample.length=5',
  ])


@pytest.fixture
def plain_cfg():
  return OmegaConf.create({'model': {'rnn_size': 8, 'num_layers': 2, 'dropout': 0.0}})
