"""Flatten per-layer test outcomes into one report."""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, replace
from typing import Sequence, Tuple

from config import BuiltLayer, TestOutcome


@dataclass(frozen=True)
class ReportEntry:
    layer: str
    outcome: TestOutcome

    @property
    def desc(self) -> str:
        return self.outcome.desc

    @property
    def passed(self) -> bool:
        return self.outcome.passed


@dataclass(frozen=True)
class TestReport:
    __test__ = False

    entries: Tuple[ReportEntry, ...] = ()

    @property
    def total(self) -> int:
        return len(self.entries)

    @property
    def failures(self) -> int:
        return sum(1 for e in self.entries if not e.passed)

    @property
    def passed(self) -> bool:
        return self.failures == 0

    def to_junit_xml(self, suite_name: str = "layered-img-build") -> bytes:
        """Serialize as JUnit XML (testsuites > testsuite > testcase)"""
        root = ET.Element("testsuites", tests=str(self.total), failures=str(self.failures))
        suite = ET.SubElement(root, "testsuite", name=suite_name,
                              tests=str(self.total), failures=str(self.failures), errors="0", skipped="0")
        for entry in self.entries:
            case = ET.SubElement(suite, "testcase", name=entry.desc, classname=entry.layer)
            if not entry.passed:
                detail = entry.outcome.detail or "failed"
                failure = ET.SubElement(case, "failure", message=detail.splitlines()[0])
                failure.text = detail
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def aggregate_test_results(layers: Sequence[BuiltLayer], prefix: bool = True) -> TestReport:
    """Merge per-layer TestResults in layer order; descriptions become '<layer>: <desc>'"""
    entries = []
    for layer in layers:
        if layer.test_result is None:
            continue
        for outcome in layer.test_result.outcomes:
            if prefix:
                outcome = replace(outcome, desc=f"{layer.name}: {outcome.desc}")
            entries.append(ReportEntry(layer=layer.name, outcome=outcome))
    return TestReport(entries=tuple(entries))
