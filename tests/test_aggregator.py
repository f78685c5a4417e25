"""Tests for aggregator.py: flattened, prefixed test reports."""

import xml.etree.ElementTree as ET

from aggregator import aggregate_test_results
from config import BuiltLayer, TestOutcome, TestResult


def _layer(name, *outcomes, runner_error=None):
    result = TestResult(outcomes=tuple(TestOutcome(desc=d, passed=p, detail="" if p else f"{d} broke")
                                       for d, p in outcomes), runner_error=runner_error)
    return BuiltLayer(name=name, ref=f"w/{name}:1", size=1, fingerprint="1", diff_ids=(),
                      test_result=result if outcomes else None)


class TestAggregate:
    """Tests for aggregate_test_results."""

    def test_prefix_and_order(self):
        layers = [_layer("base", ("marker", True)), _layer("tools", ("version", True), ("bench", False))]

        report = aggregate_test_results(layers)

        assert [(e.desc, e.passed) for e in report.entries] == [
            ("base: marker", True),
            ("tools: version", True),
            ("tools: bench", False),
        ]
        assert [e.layer for e in report.entries] == ["base", "tools", "tools"]
        assert report.total == 3
        assert report.failures == 1
        assert not report.passed

    def test_layers_without_results_contribute_nothing(self):
        report = aggregate_test_results([_layer("app"), _layer("tools", ("version", True))])

        assert [e.desc for e in report.entries] == ["tools: version"]
        assert report.passed

    def test_without_prefix(self):
        report = aggregate_test_results([_layer("tools", ("version", True))], prefix=False)
        assert report.entries[0].desc == "version"

    def test_empty(self):
        report = aggregate_test_results([])
        assert report.total == 0
        assert report.passed


class TestJunitXml:
    """Tests for TestReport.to_junit_xml."""

    def test_structure(self):
        report = aggregate_test_results([_layer("tools", ("version", True), ("bench", False))])

        root = ET.fromstring(report.to_junit_xml())

        assert root.tag == "testsuites"
        suite = root.find("testsuite")
        assert suite.get("tests") == "2"
        assert suite.get("failures") == "1"
        cases = suite.findall("testcase")
        assert [c.get("name") for c in cases] == ["tools: version", "tools: bench"]
        assert [c.get("classname") for c in cases] == ["tools", "tools"]
        assert cases[0].find("failure") is None
        failure = cases[1].find("failure")
        assert failure.get("message") == "bench broke"
        assert failure.text == "bench broke"

    def test_declaration(self):
        xml = aggregate_test_results([]).to_junit_xml(suite_name="custom")
        assert xml.startswith(b"<?xml")
        assert ET.fromstring(xml).find("testsuite").get("name") == "custom"
