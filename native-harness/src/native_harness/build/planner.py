from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class StageDecision:
    stage: str
    run: bool
    reason: str


@dataclass(frozen=True)
class BuildPlan:
    compile: StageDecision
    package: StageDecision
    install: StageDecision

    def stages(self) -> list[StageDecision]:
        return [self.compile, self.package, self.install]

    def describe(self) -> str:
        return ", ".join(
            f"{d.stage}={'run' if d.run else 'skip'} ({d.reason})" for d in self.stages()
        )


class BuildPlanner:
    """Three-stage staleness gate: compile -> package -> install.

    A stage is skipped only when its current fingerprint equals the recorded
    one and its output is confirmed present. Running a stage always runs every
    stage after it; never the reverse.
    """

    ORDER = ("compile", "package", "install")

    def plan(
        self,
        *,
        current: Mapping[str, str],
        recorded: Mapping[str, Optional[str]],
        present: Mapping[str, bool],
        force: bool = False,
    ) -> BuildPlan:
        decisions: Dict[str, StageDecision] = {}
        upstream_ran = False
        for stage in self.ORDER:
            if force:
                decision = StageDecision(stage, True, "forced")
            elif upstream_ran:
                decision = StageDecision(stage, True, "upstream stage rebuilt")
            elif not present.get(stage, False):
                decision = StageDecision(stage, True, "output missing")
            elif recorded.get(stage) is None:
                decision = StageDecision(stage, True, "no recorded fingerprint")
            elif recorded.get(stage) != current.get(stage):
                decision = StageDecision(stage, True, "inputs changed")
            else:
                decision = StageDecision(stage, False, "up to date")
            upstream_ran = upstream_ran or decision.run
            decisions[stage] = decision
        return BuildPlan(
            compile=decisions["compile"],
            package=decisions["package"],
            install=decisions["install"],
        )
