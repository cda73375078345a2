"""Character vocabulary and batch loading for LSTM-LM training."""  # module docstring

from .vocab import CharVocab, UnknownSymbolError, VocabularyMismatchError  # re-export vocabulary
from .loader import TEST, TRAIN, VAL, CorpusError, LineSplitLoader, split_fractions  # expose loader utilities

__all__ = [
  'CharVocab',
  'CorpusError',
  'LineSplitLoader',
  'TEST',
  'TRAIN',
  'UnknownSymbolError',
  'VAL',
  'VocabularyMismatchError',
  'split_fractions',
]  # controlled exports
