import re
from dataclasses import dataclass
from typing import List, Sequence

import structlog

from trackdiff.diff import TOKEN_PATTERN
from trackdiff.errors import HostRejectedError, TokenResolutionError
from trackdiff.host.context import Pending, RequestContext
from trackdiff.host.ranges import DocRange
from trackdiff.models import TokenMap

logger = structlog.get_logger(__name__)

# The host only splits natively on delimiters; fine tokens are resolved by search.
COARSE_DELIMITERS = (" ",)


@dataclass
class _SearchProxy:
    text: str
    occurrence: int
    coarse_text: str
    results: Pending[List[DocRange]]

    def resolve(self) -> DocRange:
        matches = self.results.value
        if len(matches) <= self.occurrence:
            logger.warning("Could not map fine token", token=self.text, coarse=self.coarse_text)
            raise TokenResolutionError(self.text, self.coarse_text)
        found = matches[self.occurrence]
        if found.text != self.text:
            raise TokenResolutionError(self.text, self.coarse_text, hint=f"search matched '{found.text}'")
        return found


class TokenMapper:
    """
    Partitions a live range into addressable fine tokens.

    Synchronisation boundaries: (1) coarse ranges split on spaces, with their
    texts; (2) every fine-token search queued and resolved in one batch; (3) only
    when a token straddles two coarse ranges (e.g. " \\t"), its pieces are joined.
    """

    def __init__(self, delimiters: Sequence[str] = COARSE_DELIMITERS):
        self.delimiters = list(delimiters)

    def tokenize(self, context: RequestContext, live_range: DocRange) -> TokenMap:
        # SYNC 1: coarse ranges and the full text
        coarse_pending = live_range.split(self.delimiters)
        full_pending = live_range.load_text()
        self._sync(context, "coarse split")
        coarse_ranges = coarse_pending.value
        full_text = full_pending.value

        if "".join(r.text for r in coarse_ranges) != full_text:
            raise TokenResolutionError("", full_text, hint="coarse ranges do not cover the range text")

        # Global offsets of each coarse range
        bounds = []
        offset = 0
        for coarse_range in coarse_ranges:
            bounds.append((offset, offset + len(coarse_range.text), coarse_range))
            offset += len(coarse_range.text)

        # 2. Queue all searches. Tokens come from the full text so they match the
        #    differ's tokens exactly; each is searched for inside the coarse range(s) it covers.
        planned: List[tuple] = []  # (token_text, [proxies])
        for match in TOKEN_PATTERN.finditer(full_text):
            start, end = match.span()
            token_text = match.group(0)
            parts = []
            for c_start, c_end, coarse_range in bounds:
                if c_end <= start or c_start >= end:
                    continue
                local_start = max(start, c_start) - c_start
                local_end = min(end, c_end) - c_start
                coarse_text = coarse_range.text
                piece = coarse_text[local_start:local_end]
                occurrence = _occurrence_index(coarse_text, piece, local_start)
                if occurrence < 0:
                    raise TokenResolutionError(token_text, coarse_text, hint="token overlaps an earlier occurrence")
                parts.append(
                    _SearchProxy(
                        text=piece,
                        occurrence=occurrence,
                        coarse_text=coarse_text,
                        results=coarse_range.search(piece, match_case=True),
                    )
                )
            planned.append((token_text, parts))

        # SYNC 2: execute all searches
        self._sync(context, "fine token search")

        # 3. Process results
        entries = []
        straddling = 0
        for token_text, parts in planned:
            ranges = [proxy.resolve() for proxy in parts]
            if len(ranges) == 1:
                entries.append((token_text, ranges[0]))
            else:
                entries.append((token_text, ranges[0].expand_to(ranges[-1])))
                straddling += 1

        if straddling:
            # SYNC 3: join tokens that straddle coarse ranges
            self._sync(context, "straddling token join")

        token_map = TokenMap.build(entries)
        if token_map.text != full_text:
            raise TokenResolutionError("", full_text, hint="tokens do not reproduce the range text")

        logger.debug(
            "Token map built",
            coarse=len(coarse_ranges),
            tokens=len(token_map),
            straddling=straddling,
            generation=token_map.generation,
        )
        return token_map

    def _sync(self, context: RequestContext, phase: str):
        try:
            context.sync()
        except HostRejectedError as e:
            raise TokenResolutionError(e.operation, hint=f"{phase} rejected by host: {e.reason}") from e


def _occurrence_index(haystack: str, needle: str, offset: int) -> int:
    """
    Position of the occurrence starting at `offset` among the non-overlapping,
    left-to-right occurrences of `needle` (the order host search reports them in).
    Returns -1 when the scan never starts a match at `offset`.
    """
    for i, match in enumerate(re.finditer(re.escape(needle), haystack)):
        if match.start() == offset:
            return i
        if match.start() > offset:
            break
    return -1
