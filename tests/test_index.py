"""Tests for Index identity, tags and prime levels."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pepsad.core.index import Index


class TestIndexCreation:
    def test_basic_creation(self):
        idx = Index(3, "Site")
        assert idx.dim == 3
        assert idx.tags == ("Site",)
        assert idx.plev == 0

    def test_fresh_identity(self):
        assert Index(2) != Index(2)

    def test_explicit_id(self):
        assert Index(2, id=7) == Index(2, id=7)

    def test_comma_separated_tags_are_sorted(self):
        idx = Index(2, "Link,Lh,1,2")
        assert idx.tags == ("1", "2", "Lh", "Link")

    def test_duplicate_tags_collapse(self):
        assert Index(2, "a,a,b").tags == ("a", "b")

    def test_zero_dim_raises(self):
        with pytest.raises(ValueError, match="dim"):
            Index(0)

    def test_negative_plev_raises(self):
        with pytest.raises(ValueError, match="prime level"):
            Index(2, plev=-1)


class TestIndexEquality:
    def test_dim_not_part_of_equality(self):
        assert Index(2, id=11) == Index(3, id=11)

    def test_tags_distinguish(self):
        i = Index(2, "a")
        assert i.addtags("b") != i

    def test_hash_consistent_with_eq(self):
        i = Index(4, "x")
        j = i.prime().noprime()
        assert i == j
        assert hash(i) == hash(j)
        assert len({i, j}) == 1


class TestPriming:
    def test_prime_distinguishes(self):
        i = Index(2)
        assert i.prime() != i
        assert i.prime().plev == 1

    def test_setprime(self):
        i = Index(2)
        assert i.setprime(3).plev == 3
        assert i.setprime(3).noprime() == i

    def test_repr_shows_primes(self):
        assert repr(Index(2).prime(2)).endswith("''")

    @given(n=st.integers(min_value=0, max_value=10), m=st.integers(min_value=0, max_value=10))
    @settings(max_examples=50)
    def test_prime_is_additive(self, n, m):
        i = Index(2, "s")
        assert i.prime(n).prime(m) == i.prime(n + m)


class TestTags:
    def test_addtags_multiple(self):
        i = Index(2, "Link").addtags("Lh", "1,2")
        assert i.hastags("Link", "Lh", "1", "2")

    def test_removetags(self):
        i = Index(2, "Link,Lh")
        assert i.removetags("Lh").tags == ("Link",)

    def test_hastags_subset(self):
        i = Index(2, "a,b")
        assert i.hastags("a")
        assert not i.hastags("c")

    def test_sim_keeps_metadata_new_identity(self):
        i = Index(3, "Site", plev=1)
        s = i.sim()
        assert s != i
        assert (s.dim, s.tags, s.plev) == (i.dim, i.tags, i.plev)
