"""Tests for acceptance.py: per-layer tests in ephemeral containers."""

from dataclasses import replace

import pytest

from acceptance import IDLE_COMMAND, INFRASTRUCTURE_DESC, LayerTestRunner, evaluate
from config import BuiltLayer, TestExpectation, TestSpec
from engine import ExecResult

IMAGE = "layered-work/tools:abc"


def _test(desc, *command, **expect):
    return TestSpec(desc=desc, command=tuple(command), expect=TestExpectation(**expect))


@pytest.fixture
def layer(engine):
    engine.add_image(IMAGE, {"usr/bin/tool": b"tool"})
    return BuiltLayer(name="tools", ref=IMAGE, size=4, fingerprint="abc", diff_ids=())


class TestEvaluate:
    """Tests for evaluate."""

    def test_exit_code(self):
        assert evaluate(_test("t", "true"), ExecResult(0, "", "")).passed
        outcome = evaluate(_test("t", "false"), ExecResult(1, "", "boom"))
        assert not outcome.passed
        assert outcome.detail.startswith("exit code 1, expected 0")
        assert "boom" in outcome.detail

    def test_any_exit_code(self):
        assert evaluate(_test("t", "x", exit_code=None), ExecResult(3, "", "")).passed

    def test_output_checks(self):
        result = ExecResult(0, "curl 8.5.0\nrelease\n", "warning: old\n")

        assert evaluate(_test("t", "x", stdout_contains="curl 8"), result).passed
        assert evaluate(_test("t", "x", stdout_not_contains="error"), result).passed
        assert evaluate(_test("t", "x", stderr_contains="warning"), result).passed
        assert evaluate(_test("t", "x", stdout_matches=r"^release$"), result).passed
        assert not evaluate(_test("t", "x", stdout_contains="wget"), result).passed
        assert not evaluate(_test("t", "x", stdout_not_contains="curl"), result).passed

    def test_all_problems_reported(self):
        outcome = evaluate(_test("t", "x", stdout_contains="a", stderr_contains="b"), ExecResult(2, "", ""))
        assert "exit code 2" in outcome.detail
        assert "stdout does not contain 'a'" in outcome.detail
        assert "stderr does not contain 'b'" in outcome.detail


class TestLayerTestRunner:
    """Tests for LayerTestRunner.run."""

    def test_pass_and_fail_in_declared_order(self, engine, build_config, layer):
        engine.exec_results[("tool", "--version")] = ExecResult(0, "tool 1.0\n", "")
        engine.exec_results[("tool", "--bench")] = ExecResult(1, "", "too slow\n")
        tests = [_test("version", "tool", "--version", stdout_contains="1.0"), _test("bench", "tool", "--bench")]

        result = LayerTestRunner(engine, build_config).run(layer, tests)

        assert [(o.desc, o.passed) for o in result.outcomes] == [("version", True), ("bench", False)]
        assert result.runner_error is None
        assert not result.passed
        assert "too slow" in result.outcomes[1].detail

    def test_container_from_layer_image_is_removed(self, engine, build_config, layer):
        LayerTestRunner(engine, build_config).run(layer, [_test("t", "true")])

        assert len(engine.created) == 1
        assert engine.live_containers() == []
        assert engine.removed == engine.created

    def test_container_removed_after_failures(self, engine, build_config, layer):
        engine.exec_results[("false",)] = ExecResult(1, "", "")

        LayerTestRunner(engine, build_config).run(layer, [_test("a", "false"), _test("b", "false")])

        assert engine.live_containers() == []

    def test_container_command_and_env(self, engine, build_config, layer):
        seen = []

        def handler(image, command, env):
            seen.append((image, command, env))
            return ExecResult(0, "", "")

        engine.exec_handler = handler
        test = TestSpec(desc="env", command=("printenv", "LANG"), env={"LANG": "C"})

        LayerTestRunner(engine, build_config).run(layer, [test])

        assert seen == [(IMAGE, ("printenv", "LANG"), {"LANG": "C"})]
        assert list(engine.containers.values()) == []

    def test_idle_command(self, engine, build_config, layer):
        runner = LayerTestRunner(engine, build_config)
        created = []
        original = engine.create_container

        def spy(image, command, name=None):
            created.append((image, tuple(command), name))
            return original(image, command, name)

        engine.create_container = spy
        runner.run(layer, [_test("t", "true")])

        image, command, name = created[0]
        assert image == IMAGE
        assert command == tuple(IDLE_COMMAND)
        assert name.startswith("layerimg_tools_")

    def test_parallel_keeps_order(self, engine, build_config, layer):
        tests = [_test(f"t{i}", "echo", str(i)) for i in range(6)]
        engine.exec_results[("echo", "3")] = ExecResult(1, "", "")

        result = LayerTestRunner(engine, build_config).run(layer, tests, parallel=True)

        assert [o.desc for o in result.outcomes] == [f"t{i}" for i in range(6)]
        assert [o.passed for o in result.outcomes] == [True, True, True, False, True, True]
        assert engine.live_containers() == []

    def test_no_tests(self, engine, build_config, layer):
        result = LayerTestRunner(engine, build_config).run(layer, [])

        assert result.outcomes == ()
        assert result.passed
        assert engine.created == []


class TestInfrastructureFailures:
    """Runner errors are reported apart from failing tests."""

    def test_create_failure(self, engine, build_config, layer):
        engine.fail_create = True

        result = LayerTestRunner(engine, build_config).run(layer, [_test("t", "true")])

        assert result.runner_error is not None
        assert "cannot create test container" in result.runner_error
        assert [(o.desc, o.passed) for o in result.outcomes] == [(INFRASTRUCTURE_DESC, False)]

    def test_start_failure_still_removes_container(self, engine, build_config, layer):
        engine.fail_start = True

        result = LayerTestRunner(engine, build_config).run(layer, [_test("t", "true")])

        assert "cannot start test container" in result.runner_error
        assert len(engine.created) == 1
        assert engine.live_containers() == []

    def test_missing_image(self, engine, build_config, layer):
        result = LayerTestRunner(engine, build_config).run(replace(layer, ref="layered-work/gone:1"),
                                                           [_test("t", "true")])

        assert result.runner_error is not None
        assert engine.created == []

    def test_keep_containers(self, engine, build_config, layer):
        config = replace(build_config, keep_test_containers=True)

        LayerTestRunner(engine, config).run(layer, [_test("t", "true")])

        assert len(engine.live_containers()) == 1

    def test_abort(self, engine, build_config, layer):
        runner = LayerTestRunner(engine, build_config)
        runner.abort()

        result = runner.run(layer, [_test("t", "true")])

        assert "aborted" in result.runner_error
        assert engine.created == []
