"""Shared fixtures: small parameter sets over the 1024-bit test group."""

from functools import lru_cache

from p4p.commitments import derive_generators
from p4p.constants import MODP_1024_PRIME
from p4p.data_models import ProtocolParameters

TEST_PRIME = MODP_1024_PRIME


@lru_cache(maxsize=None)
def group_generators():
    return derive_generators(TEST_PRIME)


def make_params(m=4, F=65537, l=10, N=6):
    g, h = group_generators()
    return ProtocolParameters(m=m, F=F, l=l, g=g, h=h, N=N, p=TEST_PRIME)
