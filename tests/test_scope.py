from __future__ import annotations

import pytest

from stageci.dsl import cmd
from stageci.errors import UndefinedVariable
from stageci.scope import EnvironmentScope, interpolate_command


def test_stage_overlay_shadows_without_touching_global():
    root = EnvironmentScope({"IMAGE": "app", "TAG": "1"})
    stage = root.with_overlay({"TAG": "2"})

    assert stage.resolve("TAG") == "2"
    assert stage.resolve("IMAGE") == "app"
    assert root.resolve("TAG") == "1"


def test_lookup_reports_defining_scope():
    root = EnvironmentScope({"A": "1"})
    stage = root.with_overlay({"B": "2"})

    assert stage.lookup("A").scope == "global"
    assert stage.lookup("B").scope == "stage"
    assert stage.lookup("C") is None
    assert "A" in stage
    assert "C" not in stage


def test_flatten_inner_wins():
    scope = EnvironmentScope({"A": "1", "B": "1"}).with_overlay({"B": "2", "C": "3"})
    assert scope.flatten() == {"A": "1", "B": "2", "C": "3"}
    assert [v.name for v in scope.variables()] == ["A", "B", "C"]


def test_values_are_strings():
    scope = EnvironmentScope({"N": 5})
    assert scope.resolve("N") == "5"


def test_interpolate_resolves_references():
    scope = EnvironmentScope({"IMAGE": "app", "BUILD_NUMBER": "7"})
    assert scope.interpolate("docker build -t ${IMAGE}:${BUILD_NUMBER} .") == "docker build -t app:7 ."


def test_interpolate_leaves_plain_dollar_alone():
    scope = EnvironmentScope({})
    assert scope.interpolate("echo $HOME and ${1bad}") == "echo $HOME and ${1bad}"


def test_escaped_reference_is_literal():
    scope = EnvironmentScope({"X": "1"})
    assert scope.interpolate("echo $${X} ${X}") == "echo ${X} 1"


def test_undefined_variable_raises():
    scope = EnvironmentScope({"A": "1"})
    with pytest.raises(UndefinedVariable) as exc:
        scope.interpolate("echo ${MISSING}")
    assert exc.value.name == "MISSING"
    assert exc.value.kind == "UndefinedVariable"
    assert exc.value.details["template"] == "echo ${MISSING}"


def test_interpolate_command_resolves_every_field():
    scope = EnvironmentScope({"DIR": "build", "TAG": "v1"})
    command = cmd("make", "release-${TAG}", name="Release ${TAG}", cwd="${DIR}", env={"VERSION": "${TAG}"})

    resolved = interpolate_command(command, scope)

    assert resolved.args == ("release-v1",)
    assert resolved.cwd == "build"
    assert dict(resolved.env) == {"VERSION": "v1"}
    # the display name is left as written
    assert resolved.name == "Release ${TAG}"
    assert command.args == ("release-${TAG}",)
