import re
from typing import Dict, Iterable, List, Sequence, Tuple

import structlog
from diff_match_patch import diff_match_patch

from trackdiff.models import DiffOp, DiffOpKind, Granularity

logger = structlog.get_logger(__name__)

# Word characters, runs of punctuation, runs of whitespace. Shared with the TokenMapper
# so diff units and document tokens line up one-to-one.
TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]+|\s+")

# A sentence runs up to terminal punctuation followed by whitespace (kept with it),
# or to the end of the text. Leading whitespace forms its own unit.
SENTENCE_PATTERN = re.compile(r"\S.*?(?:[.!?;:](?=\s|$)\s*|$)|\s+", re.S)


def tokenize(text: str, granularity: Granularity = Granularity.TOKEN) -> List[str]:
    """
    Splits text into atomic diff units. Joining the result gives back `text`.
    """
    pattern = SENTENCE_PATTERN if granularity == Granularity.SENTENCE else TOKEN_PATTERN
    return [m.group(0) for m in pattern.finditer(text) if m.group(0)]


def diff(original: str, revised: str, granularity: Granularity = Granularity.TOKEN) -> List[DiffOp]:
    """
    Computes a minimal edit script between two texts over whole tokens.
    Equal+Delete texts rebuild `original`; Equal+Insert texts rebuild `revised`.
    """
    dmp = diff_match_patch()
    # No deadline: an exact shortest edit script, identical on every run.
    dmp.Diff_Timeout = 0

    # 1. Token-level encoding
    chars1, chars2, token_array = _tokens_to_chars(original, revised, granularity)

    # 2. Diff the encoded strings (one char == one token)
    diffs_encoded = dmp.diff_main(chars1, chars2, False)

    # 3. Decode back to text
    dmp.diff_charsToLines(diffs_encoded, token_array)

    ops = [DiffOp(DiffOpKind(op), text) for op, text in diffs_encoded if text]
    logger.debug(
        "Computed diff",
        granularity=granularity.value,
        chunks=len(ops),
        deletes=sum(1 for d in ops if d.op == DiffOpKind.DELETE),
        inserts=sum(1 for d in ops if d.op == DiffOpKind.INSERT),
    )
    return ops


def _tokens_to_chars(text1: str, text2: str, granularity: Granularity) -> Tuple[str, str, List[str]]:
    """
    Splits both texts into tokens and encodes each distinct token as one unicode character.
    """
    token_array: List[str] = []
    token_hash: Dict[str, int] = {}

    def encode_text(text: str) -> str:
        encoded_chars = []
        for token in tokenize(text, granularity):
            if token in token_hash:
                encoded_chars.append(chr(token_hash[token]))
            else:
                code = len(token_array)
                token_hash[token] = code
                token_array.append(token)
                encoded_chars.append(chr(code))
        return "".join(encoded_chars)

    chars1 = encode_text(text1)
    chars2 = encode_text(text2)
    return chars1, chars2, token_array


def reconstruct_original(ops: Iterable[DiffOp]) -> str:
    return "".join(text for op, text in ops if op != DiffOpKind.INSERT)


def reconstruct_revised(ops: Iterable[DiffOp]) -> str:
    return "".join(text for op, text in ops if op != DiffOpKind.DELETE)


def serialize_diff(ops: Sequence[DiffOp]) -> List[List]:
    """Wire form: [[-1|0|1, text], ...] in script order."""
    return [[int(op), text] for op, text in ops]


def deserialize_diff(data: Iterable[Sequence]) -> List[DiffOp]:
    ops = []
    for item in data:
        code, text = item
        ops.append(DiffOp(DiffOpKind(int(code)), str(text)))
    return ops
