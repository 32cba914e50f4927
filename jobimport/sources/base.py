from __future__ import annotations

from abc import ABC, abstractmethod

from jobimport.core.models import CanonicalJob


class FeedParser(ABC):
    @abstractmethod
    def parse(self, body: str) -> list[CanonicalJob]:
        raise NotImplementedError
