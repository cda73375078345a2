"""Character vocabulary shared by the loader, model, and checkpoints."""  # describe module purpose

from types import MappingProxyType  # read-only views over the frozen mappings
from typing import Dict, Iterable, List, Mapping  # import typing for type hints


class VocabularyMismatchError(ValueError):
  """Raised when a checkpoint vocabulary disagrees with the active corpus."""


class UnknownSymbolError(KeyError):
  """Raised when encoding a character that is not part of the vocabulary."""


class CharVocab:
  """Frozen bidirectional mapping between characters and dense ids."""  # class summary

  def __init__(self, stoi: Mapping[str, int]) -> None:
    ids = sorted(stoi.values())  # collect assigned ids
    if ids != list(range(len(ids))):  # ids must be dense in [0, V)
      raise ValueError('vocabulary ids must be dense and start at 0')
    for symbol in stoi:  # every key must be a single character
      if not isinstance(symbol, str) or len(symbol) != 1:
        raise ValueError(f'vocabulary symbols must be single characters, got {symbol!r}')
    self._stoi: Dict[str, int] = dict(stoi)  # private character to id mapping
    self._itos: Dict[int, str] = {idx: ch for ch, idx in self._stoi.items()}  # private id to character mapping

  @classmethod
  def from_text(cls, text: str) -> 'CharVocab':
    chars = sorted(set(text))  # unique symbols in a stable order
    return cls({ch: idx for idx, ch in enumerate(chars)})  # assign ids by sorted position

  @classmethod
  def from_dict(cls, mapping: Mapping[str, int]) -> 'CharVocab':
    return cls({str(ch): int(idx) for ch, idx in mapping.items()})  # normalize json-decoded payloads

  def to_dict(self) -> Dict[str, int]:
    return dict(self._stoi)  # plain copy for serialization

  @property
  def stoi(self) -> Mapping[str, int]:
    return MappingProxyType(self._stoi)  # expose read-only view

  @property
  def itos(self) -> Mapping[int, str]:
    return MappingProxyType(self._itos)  # expose read-only view

  def __len__(self) -> int:
    return len(self._stoi)

  def __contains__(self, symbol: object) -> bool:
    return symbol in self._stoi

  def __eq__(self, other: object) -> bool:
    if not isinstance(other, CharVocab):
      return NotImplemented
    return self._stoi == other._stoi

  def __repr__(self) -> str:
    return f'CharVocab(size={len(self)})'

  def encode(self, text: Iterable[str]) -> List[int]:
    ids: List[int] = []  # initialize id list
    for ch in text:  # iterate characters
      try:
        ids.append(self._stoi[ch])  # append existing id
      except KeyError:
        raise UnknownSymbolError(ch) from None  # unseen characters are a hard error
    return ids  # return encoded ids

  def decode(self, ids: Iterable[int]) -> str:
    return ''.join(self._itos[int(idx)] for idx in ids)  # join characters back into text

  def check_compatible(self, other: 'CharVocab') -> None:
    if self == other:  # identical mappings are always compatible
      return
    missing = sorted(ch for ch in other._stoi if ch not in self._stoi)  # symbols only present in other
    extra = sorted(ch for ch in self._stoi if ch not in other._stoi)  # symbols only present here
    moved = sorted(ch for ch, idx in other._stoi.items() if ch in self._stoi and self._stoi[ch] != idx)  # symbols with different ids
    raise VocabularyMismatchError(
      'the character vocabulary of this dataset and the one in the checkpoint are not the same '
      f'(missing={missing!r}, extra={extra!r}, reassigned={moved!r})'
    )
