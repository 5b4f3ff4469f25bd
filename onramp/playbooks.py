"""
Playbook sequence catalog.

Maps operation names to ordered lists of ansible-playbook invocations,
verified against the OnRamp Makefiles. Step order encodes real dependency
ordering (a router is installed before the core it routes for and removed
after it), so never reorder the steps of a shipped sequence.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import List, Mapping, Tuple, Union

from onramp.errors import UnknownSequenceError
from onramp.state import DeployState

TEARDOWN_TAGS = frozenset({"uninstall", "stop"})


class Direction(str, Enum):
    """Which way a sequence moves a component's deployment state."""

    DEPLOY = "deploy"
    UNDEPLOY = "undeploy"

    @property
    def interim_state(self) -> DeployState:
        if self == Direction.UNDEPLOY:
            return DeployState.UNDEPLOYING
        return DeployState.DEPLOYING

    @property
    def final_state(self) -> DeployState:
        if self == Direction.UNDEPLOY:
            return DeployState.NOT_DEPLOYED
        return DeployState.DEPLOYED


@dataclass(frozen=True)
class PlaybookStep:
    """A single ansible-playbook invocation."""

    name: str
    playbook: str  # relative to the OnRamp root
    tags: Tuple[str, ...] = ()

    def tag_string(self) -> str:
        """Tags joined with commas, or "" if none."""
        return ",".join(self.tags)

    @property
    def is_teardown(self) -> bool:
        return any(tag in TEARDOWN_TAGS for tag in self.tags)


@dataclass(frozen=True)
class PlaybookSequence:
    """Ordered list of playbook steps run as one task."""

    name: str
    steps: Tuple[PlaybookStep, ...] = field(default_factory=tuple)

    @property
    def direction(self) -> Direction:
        """UNDEPLOY if any step carries an uninstall/stop tag, else DEPLOY."""
        if any(step.is_teardown for step in self.steps):
            return Direction.UNDEPLOY
        return Direction.DEPLOY


def _step(name: str, playbook: str, *tags: str) -> PlaybookStep:
    return PlaybookStep(name=name, playbook=playbook, tags=tuple(tags))


SEQUENCES: Mapping[str, PlaybookSequence] = MappingProxyType({
    "aether-pingall": PlaybookSequence(
        name="Ping all hosts",
        steps=(
            _step("Ping all hosts", "pingall.yml"),
        ),
    ),
    "k8s-install": PlaybookSequence(
        name="Install Kubernetes (RKE2 + Helm)",
        steps=(
            _step("Install RKE2", "deps/k8s/rke2.yml", "install"),
            _step("Install Helm", "deps/k8s/helm.yml", "install"),
        ),
    ),
    "k8s-uninstall": PlaybookSequence(
        name="Uninstall Kubernetes",
        steps=(
            _step("Uninstall Helm", "deps/k8s/helm.yml", "uninstall"),
            _step("Uninstall RKE2", "deps/k8s/rke2.yml", "uninstall"),
        ),
    ),
    "5gc-install": PlaybookSequence(
        name="Install 5G Core (SD-Core)",
        steps=(
            _step("Install 5GC Router", "deps/5gc/router.yml", "install"),
            _step("Install 5GC Core", "deps/5gc/core.yml", "install"),
        ),
    ),
    "5gc-uninstall": PlaybookSequence(
        name="Uninstall 5G Core",
        steps=(
            _step("Uninstall 5GC Core", "deps/5gc/core.yml", "uninstall"),
            _step("Uninstall 5GC Router", "deps/5gc/router.yml", "uninstall"),
        ),
    ),
    "srsran-gnb-install": PlaybookSequence(
        name="Install srsRAN gNB",
        steps=(
            _step("Install Docker", "deps/srsran/docker.yml", "install"),
            _step("Install srsRAN Router", "deps/srsran/router.yml", "install"),
            _step("Start srsRAN gNB", "deps/srsran/gNB.yml", "start"),
        ),
    ),
    "srsran-gnb-uninstall": PlaybookSequence(
        name="Uninstall srsRAN gNB",
        steps=(
            _step("Stop srsRAN gNB", "deps/srsran/gNB.yml", "stop"),
            _step("Uninstall srsRAN Router", "deps/srsran/router.yml", "uninstall"),
        ),
    ),
})


def get_sequence(name: str) -> PlaybookSequence:
    """
    Look up a sequence by operation name.

    Raises:
        UnknownSequenceError: if ``name`` is not in the catalog
    """
    try:
        return SEQUENCES[name]
    except KeyError:
        raise UnknownSequenceError(name) from None


def list_sequences() -> List[Tuple[str, PlaybookSequence]]:
    """Return ``(operation name, sequence)`` pairs sorted by name."""
    return sorted(SEQUENCES.items())


def resolve_sequence(sequence: Union[str, PlaybookSequence]) -> PlaybookSequence:
    """Accept either a catalog key or an explicit sequence."""
    if isinstance(sequence, PlaybookSequence):
        return sequence
    return get_sequence(sequence)
