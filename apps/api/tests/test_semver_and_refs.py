"""
Tests for semantic version arithmetic and branch/tag name validation.
"""

import pytest

from asset_vcs.core.exceptions import ValidationError
from asset_vcs.models.version_control import VersionBump
from asset_vcs.utils.semver import SemanticVersion, compare_versions, next_version
from asset_vcs.utils.vcs_validation import (
    ensure_valid_ref_name,
    get_invalid_ref_name_reasons,
    validate_branch_name,
    validate_tag_name,
)


class TestSemanticVersion:
    @pytest.mark.parametrize("bump", list(VersionBump))
    def test_first_version_is_1_0_0(self, bump):
        assert next_version(None, bump) == "1.0.0"

    @pytest.mark.parametrize(
        "current,bump,expected",
        [
            ("1.0.0", VersionBump.PATCH, "1.0.1"),
            ("1.2.9", VersionBump.PATCH, "1.2.10"),
            ("1.2.3", VersionBump.MINOR, "1.3.0"),
            ("1.2.3", VersionBump.MAJOR, "2.0.0"),
            ("1.2.3", "minor", "1.3.0"),
        ],
    )
    def test_bumps(self, current, bump, expected):
        assert next_version(current, bump) == expected

    @pytest.mark.parametrize("value", ["1.0", "1.0.0.0", "v1.0.0", "1.a.0", ""])
    def test_invalid_versions(self, value):
        with pytest.raises(ValidationError):
            SemanticVersion.parse(value)

    def test_ordering_is_numeric(self):
        assert compare_versions("1.10.0", "1.9.9") == 1
        assert compare_versions("1.0.0", "1.0.0") == 0
        assert compare_versions("0.9.0", "1.0.0") == -1


class TestRefNames:
    @pytest.mark.parametrize("name", ["main", "feature/gripper", "release-1.2", "v2_final"])
    def test_valid_names(self, name):
        assert validate_branch_name(name)
        assert validate_tag_name(name)

    @pytest.mark.parametrize(
        "name",
        [
            "",
            "   ",
            "has space",
            "two..dots",
            "tilde~1",
            "caret^",
            "colon:",
            "star*",
            "question?",
            "bracket[",
            "ref@{1}",
            "a//b",
            ".hidden",
            "-flag",
            "trailing.",
            "/leading",
            "trailing/",
            "branch.lock",
            "x" * 256,
        ],
    )
    def test_invalid_names(self, name):
        assert not validate_branch_name(name)

    def test_reasons_are_listed(self):
        reasons = get_invalid_ref_name_reasons("-bad name.lock", "Tag")
        assert any("hyphen" in r for r in reasons)
        assert any("whitespace" in r for r in reasons)
        assert any(".lock" in r for r in reasons)
        assert all(r.startswith("Tag") for r in reasons)

    def test_ensure_raises_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            ensure_valid_ref_name("bad..name", "Branch")
        assert exc_info.value.details["reasons"]
        assert exc_info.value.http_status == 422
