from typing import Iterable, List

from chat_core.domain.models import GroundingSource


def dedupe_sources(sources: Iterable[GroundingSource]) -> List[GroundingSource]:
    """按 uri 去重，保留每个 uri 第一次出现的那一项及其顺序。"""

    seen: set[str] = set()
    unique: List[GroundingSource] = []
    for source in sources:
        if source.uri in seen:
            continue
        seen.add(source.uri)
        unique.append(source)
    return unique
