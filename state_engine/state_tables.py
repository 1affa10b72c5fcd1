"""
Entity lifecycle state machines. Each entity type owns an independent table of
valid transitions; identically named states in two tables are unrelated.
"""
from enum import Enum
from typing import Iterable, Mapping


class EntityType(str, Enum):
    PROCESS = "process"
    DOCUMENT = "document"
    AGENDA = "agenda"
    PIPELINE = "pipeline"
    FINANCIAL = "financial"
    CLIENT = "client"
    INSIGHT = "insight"

    @classmethod
    def parse(cls, tag: "str | EntityType") -> "EntityType":
        """Accept either the canonical tag or the legacy Portuguese one."""
        if isinstance(tag, EntityType):
            return tag
        normalized = (tag or "").strip().lower()
        normalized = _LEGACY_TAGS.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown entity type: {tag!r}") from None


_LEGACY_TAGS = {
    "processo": "process",
    "documento": "document",
    "financeiro": "financial",
    "cliente": "client",
}


class StateTable:
    """
    Transition table for one entity type.

    Keys are states, values the states reachable directly from them. The None key
    lists the initial states: the only targets allowed for an entity that has
    never transitioned.
    """

    def __init__(self, transitions: Mapping[str | None, Iterable[str]]):
        self._transitions: dict[str | None, frozenset[str]] = {
            state: frozenset(targets) for state, targets in transitions.items()
        }
        self._validate()

    def _validate(self) -> None:
        if not self._transitions.get(None):
            raise ValueError("Transition table must define at least one initial state")
        for source, targets in self._transitions.items():
            dangling = targets - self._transitions.keys()
            if dangling:
                raise ValueError(
                    f"States {sorted(dangling)} reachable from {source!r} are not defined in the table"
                )
        if not self.terminal_states:
            raise ValueError("Transition table must define at least one terminal state")

    @property
    def states(self) -> frozenset[str]:
        return frozenset(s for s in self._transitions if s is not None)

    @property
    def initial_states(self) -> frozenset[str]:
        return self._transitions[None]

    @property
    def terminal_states(self) -> frozenset[str]:
        # Terminal: no outgoing edge, or only a self-loop.
        return frozenset(
            s for s in self.states if self._transitions[s] <= {s}
        )

    def allowed_from(self, state: str | None) -> frozenset[str]:
        return self._transitions.get(state, frozenset())

    def is_valid(self, from_state: str | None, to_state: str) -> bool:
        """True if to_state is allowed after from_state."""
        return to_state in self.allowed_from(from_state)

    def __contains__(self, state: object) -> bool:
        return state is not None and state in self._transitions

    def __repr__(self) -> str:
        return f"StateTable(states={sorted(self.states)})"


# Current state -> allowed next states, per entity type
DEFAULT_TABLES: dict[EntityType, StateTable] = {
    EntityType.PROCESS: StateTable({
        None: ["ativo"],
        "ativo": ["suspenso", "concluido", "arquivado"],
        "suspenso": ["ativo", "arquivado"],
        "concluido": ["arquivado"],
        "arquivado": [],  # terminal
    }),
    EntityType.DOCUMENT: StateTable({
        None: ["rascunho"],
        "rascunho": ["revisao", "arquivado"],
        "revisao": ["rascunho", "aprovado"],
        "aprovado": ["assinado", "arquivado"],
        "assinado": ["arquivado"],
        "arquivado": [],  # terminal
    }),
    EntityType.AGENDA: StateTable({
        None: ["pendente"],
        "pendente": ["concluido"],
        "concluido": [],  # terminal
    }),
    EntityType.PIPELINE: StateTable({
        None: ["novo"],
        "novo": ["contatado", "perdido"],
        "contatado": ["qualificado", "perdido"],
        "qualificado": ["convertido", "perdido"],
        "convertido": [],  # terminal
        "perdido": [],  # terminal
    }),
    EntityType.FINANCIAL: StateTable({
        None: ["pendente"],
        "pendente": ["pago"],
        "pago": [],  # terminal
    }),
    EntityType.CLIENT: StateTable({
        None: ["ativo"],
        "ativo": ["inativo", "arquivado"],
        "inativo": ["ativo", "arquivado"],
        "arquivado": [],  # terminal
    }),
    EntityType.INSIGHT: StateTable({
        None: ["novo"],
        "novo": ["visto", "descartado"],
        "visto": ["resolvido", "descartado"],
        "resolvido": [],  # terminal
        "descartado": [],  # terminal
    }),
}
