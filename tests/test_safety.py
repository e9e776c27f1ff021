"""Tests for the dangerous-command blocklist."""

from __future__ import annotations

import re

import pytest

from engram.safety import ALLOW, DANGEROUS_PATTERNS, SafetyFilter, check


class TestBlocked:

    @pytest.mark.parametrize(
        "command, rule",
        [
            ("rm -rf /", "recursive-delete-root"),
            ("RM -RF /", "recursive-delete-root"),
            ("sudo rm -rf /", "recursive-delete-root"),
            ("rm -rf ~", "recursive-delete-root"),
            ("rm -fr $HOME", "recursive-delete-root"),
            ("rm -r -f /*", "recursive-delete-root"),
            ("rm --recursive --force /home", "recursive-delete-root"),
            ("cd /tmp && rm -Rf / ; echo done", "recursive-delete-root"),
            ("cat image.iso > /dev/sda", "device-write"),
            ("dd if=/dev/zero of=/dev/sda bs=1M", "dd-device"),
            ("shred -n 3 /dev/sdb", "shred-device"),
            ("chmod -R 777 /", "permission-bomb"),
            ("chmod -R a+rwx ~", "permission-bomb"),
            (":(){ :|:& };:", "fork-bomb"),
            ("mkfs.ext4 /dev/sdb1", "format-filesystem"),
            ("wipefs -a /dev/sdb", "format-filesystem"),
            ("mke2fs /dev/sdb", "format-filesystem"),
        ],
    )
    def test_blocked(self, command: str, rule: str) -> None:
        verdict = check(command)
        assert verdict.allowed is False
        assert verdict.rule == rule
        assert verdict.reason


class TestAllowed:

    @pytest.mark.parametrize(
        "command",
        [
            "rm -rf ./build",
            "rm -rf /tmp/scratch",
            "rm notes.txt",
            "ls -la /",
            "dd if=/dev/zero of=/dev/null count=1",
            "chmod 755 script.sh",
            "chmod -R 777 ./public",
            "git status",
            "echo hi > /dev/null",
            "cat ~/notes.txt",
            "",
        ],
    )
    def test_allowed(self, command: str) -> None:
        assert check(command) == ALLOW


class TestRules:

    def test_rule_names_unique(self) -> None:
        names = [name for name, _, _ in DANGEROUS_PATTERNS]
        assert len(names) == len(set(names))

    def test_patterns_compile(self) -> None:
        for _, pattern, _ in DANGEROUS_PATTERNS:
            re.compile(pattern)

    def test_filter_delegates(self) -> None:
        assert SafetyFilter().check("rm -rf /").rule == "recursive-delete-root"

    def test_verdict_to_dict(self) -> None:
        data = check("mkfs /dev/sda").to_dict()
        assert data["allowed"] is False
        assert data["rule"] == "format-filesystem"
