from codecrew.state.backlog_store import BacklogStore
from codecrew.state.spec_repository import SpecRepository, SpecVersion

__all__ = ["BacklogStore", "SpecRepository", "SpecVersion"]
