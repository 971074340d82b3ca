from __future__ import annotations

import sys
from pathlib import Path

import pytest

from dcode_package_builder.compliance import DEFAULT_COMPLIANCE_COMMANDS, CommandComplianceVerifier, ComplianceCommand
from dcode_package_builder.models import FailureCategory


def py(code: str) -> str:
    return f'"{sys.executable}" -c "{code}"'


def test_default_commands_cover_the_four_categories() -> None:
    assert [command.command for command in DEFAULT_COMPLIANCE_COMMANDS] == [
        "npm install",
        "npm run build",
        "npm run lint",
        "npm test",
    ]
    assert [command.category for command in DEFAULT_COMPLIANCE_COMMANDS] == [
        FailureCategory.DEPENDENCY_INSTALL,
        FailureCategory.TYPE_BUILD,
        FailureCategory.LINT,
        FailureCategory.TEST,
    ]


def test_all_commands_pass(tmp_path: Path) -> None:
    verifier = CommandComplianceVerifier(
        [
            ComplianceCommand(py("print('installed')"), FailureCategory.DEPENDENCY_INSTALL),
            ComplianceCommand(py("import sys; sys.stderr.write('warn')"), FailureCategory.TYPE_BUILD),
        ]
    )

    result = verifier.verify(str(tmp_path))

    assert result.success is True
    assert len(result.commands_run) == 2
    assert result.failure_category is None
    assert "installed" in result.output
    assert "\nSTDERR:\nwarn" in result.output


def test_first_failure_stops_the_pipeline(tmp_path: Path) -> None:
    failing_command = py("import sys; print('lint output'); sys.stderr.write('3 problems'); sys.exit(1)")
    never_run = py("open('ran.txt', 'w').write('x')")
    verifier = CommandComplianceVerifier(
        [
            ComplianceCommand(py("print('ok')"), FailureCategory.TYPE_BUILD),
            ComplianceCommand(failing_command, FailureCategory.LINT),
            ComplianceCommand(never_run, FailureCategory.TEST),
        ]
    )

    result = verifier.verify(str(tmp_path))

    assert result.success is False
    assert result.failed_command == failing_command
    assert result.failure_category == FailureCategory.LINT
    assert result.commands_run == [verifier.commands[0].command, failing_command]
    assert f"=== {failing_command} (FAILED) ===" in result.output
    assert "lint output" in result.failure_output
    assert "3 problems" in result.failure_output
    assert not (tmp_path / "ran.txt").exists()


def test_exit_code_reported_when_stderr_empty(tmp_path: Path) -> None:
    verifier = CommandComplianceVerifier([ComplianceCommand(py("import sys; sys.exit(3)"), FailureCategory.TEST)])
    result = verifier.verify(str(tmp_path))
    assert result.failure_output == "Command exited with code 3"


def test_commands_run_in_working_dir(tmp_path: Path) -> None:
    verifier = CommandComplianceVerifier(
        [ComplianceCommand(py("open('marker.txt', 'w').write('here')"), FailureCategory.DEPENDENCY_INSTALL)]
    )
    assert verifier.verify(str(tmp_path)).success
    assert (tmp_path / "marker.txt").is_file()


def test_timeout_fails_with_command_category(tmp_path: Path) -> None:
    verifier = CommandComplianceVerifier(
        [ComplianceCommand(py("import time; time.sleep(3)"), FailureCategory.TEST)],
        timeout_seconds=1,
    )

    result = verifier.verify(str(tmp_path))

    assert result.success is False
    assert result.failure_category == FailureCategory.TEST
    assert "Command timed out after 1s" in result.failure_output


def test_empty_command_list_rejected() -> None:
    with pytest.raises(ValueError):
        CommandComplianceVerifier([])


def test_missing_working_dir_fails_with_command_category(tmp_path: Path) -> None:
    verifier = CommandComplianceVerifier(
        [
            ComplianceCommand(py("print('installed')"), FailureCategory.DEPENDENCY_INSTALL),
            ComplianceCommand(py("print('built')"), FailureCategory.TYPE_BUILD),
        ]
    )

    result = verifier.verify(str(tmp_path / "gone"))

    assert result.success is False
    assert result.failure_category == FailureCategory.DEPENDENCY_INSTALL
    assert result.commands_run == [py("print('installed')")]
    assert result.failure_output.startswith("Could not start command:")
    assert "(FAILED)" in result.output
