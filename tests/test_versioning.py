"""Tests for version ordering and match specs."""

import pytest

from mambalite.versioning.matchspec import InvalidMatchSpec, MatchSpec
from mambalite.versioning.version import InvalidVersion, VersionOrder

from conftest import rec


class TestVersionOrder:
    """Conda version ordering rules."""

    @pytest.mark.parametrize("lower,higher", [
        ("0.4", "0.4.1"),
        ("0.4.1.rc", "0.4.1"),
        ("1.0dev1", "1.0a1"),
        ("1.0a1", "1.0"),
        ("1.0", "1.0post1"),
        ("1.1", "1.10"),
        ("1.9", "1!0.1"),
        ("2.0+1", "2.0+2"),
    ])
    def test_ordering(self, lower, higher):
        """Lower version compares below the higher one."""
        assert VersionOrder(lower) < VersionOrder(higher)

    def test_trailing_zeros_are_equal_and_hash_equal(self):
        """1.0 and 1.0.0 are the same version."""
        assert VersionOrder("1.0") == VersionOrder("1.0.0")
        assert hash(VersionOrder("1.0")) == hash(VersionOrder("1.0.0"))

    def test_letters_are_case_insensitive(self):
        """RC and rc order the same."""
        assert VersionOrder("1.0RC1") == VersionOrder("1.0rc1")

    @pytest.mark.parametrize("bad", ["", "1..0", "1.0*", "a!1", "1.0+"])
    def test_invalid_versions(self, bad):
        """Malformed versions raise InvalidVersion."""
        with pytest.raises(InvalidVersion):
            VersionOrder(bad)

    def test_startswith_respects_component_boundaries(self):
        """1.2.* matches 1.2.3 but not 1.20."""
        prefix = VersionOrder("1.2")
        assert VersionOrder("1.2.3").startswith(prefix)
        assert VersionOrder("1.2").startswith(prefix)
        assert not VersionOrder("1.20").startswith(prefix)


class TestMatchSpecParsing:
    """Parsing of the supported spec syntaxes."""

    def test_name_only(self):
        spec = MatchSpec.parse("NumPy")
        assert spec.name == "numpy"
        assert spec.version.is_any
        assert spec.build is None

    def test_operator_attached_to_name(self):
        spec = MatchSpec.parse("foo>=2.0")
        assert spec.name == "foo"
        assert str(spec.version) == ">=2.0"

    def test_space_separated_version_and_build(self):
        spec = MatchSpec.parse("foo 1.2.* py39_0")
        assert str(spec.version) == "1.2.*"
        assert spec.build == "py39_0"

    def test_whitespace_around_operators(self):
        """'foo >= 1.0, <2' normalizes to one version expression."""
        spec = MatchSpec.parse("foo >= 1.0, <2")
        assert str(spec.version) == ">=1.0,<2"

    def test_channel_and_brackets(self):
        spec = MatchSpec.parse("conda-forge::foo[version='>=1.0', build=py*]")
        assert spec.channel == "conda-forge"
        assert str(spec.version) == ">=1.0"
        assert spec.build == "py*"

    def test_double_equals_with_build(self):
        """foo=1.2=h123 pins version and build."""
        spec = MatchSpec.parse("foo=1.2=h123")
        assert str(spec.version) == "==1.2"
        assert spec.build == "h123"

    @pytest.mark.parametrize("bad", ["", "foo 1.0 b extra", "foo[colour=red]", "foo (>=1)", "foo >=", "foo 1.*.2"])
    def test_invalid_specs(self, bad):
        with pytest.raises(InvalidMatchSpec):
            MatchSpec.parse(bad)

    def test_exact_pins_plain_versions_only(self):
        """exact() turns 'foo 1.0' into 'foo ==1.0' and leaves ranges alone."""
        assert str(MatchSpec.parse("foo 1.0").exact().version) == "==1.0"
        assert str(MatchSpec.parse("foo >=1.0").exact().version) == ">=1.0"


class TestMatchSpecMatching:
    """Matching specs against records."""

    @pytest.mark.parametrize("spec,version,expected", [
        ("foo", "3.1", True),
        ("foo >=2.0", "2.0", True),
        ("foo >=2.0", "1.9", False),
        ("foo >=1.0,<2", "1.5", True),
        ("foo >=1.0,<2", "2.0", False),
        ("foo <1|>=3", "3.2", True),
        ("foo <1|>=3", "2.0", False),
        ("foo 1.2.*", "1.2.7", True),
        ("foo 1.2.*", "1.20", False),
        ("foo=1.2", "1.2.4", True),
        ("foo ==1.2", "1.2.4", False),
        ("foo !=1.2", "1.2.0", False),
        ("foo ~=1.2.3", "1.2.9", True),
        ("foo ~=1.2.3", "1.3.0", False),
    ])
    def test_version_matching(self, spec, version, expected):
        assert MatchSpec.parse(spec).match(rec("foo", version)) is expected

    def test_other_name_never_matches(self):
        assert not MatchSpec.parse("foo").match(rec("bar", "1.0"))

    def test_build_glob(self):
        spec = MatchSpec.parse("foo * py39*")
        assert spec.match(rec("foo", "1.0", "py39_0"))
        assert not spec.match(rec("foo", "1.0", "py38_0"))

    def test_channel_restriction(self):
        spec = MatchSpec.parse("conda-forge::foo")
        assert spec.match(rec("foo", "1.0", channel="conda-forge"))
        assert spec.match(rec("foo", "1.0", channel="https://conda.anaconda.org/conda-forge"))
        assert not spec.match(rec("foo", "1.0", channel="defaults"))
