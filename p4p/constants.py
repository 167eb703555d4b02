"""Shared constants for the P4P aggregation protocol.

承诺群使用RFC 3526 / RFC 2409中的安全素数，挑战空间与统计安全参数在此统一定义。
"""

# Number of extra random bits drawn when sampling a field element. The
# statistical distance to the uniform distribution is at most 2^-t.
STATISTICAL_SECURITY: int = 20

# Number of checksum rows (soundness iterations) when none is configured.
DEFAULT_ZKP_ITERATIONS: int = 50

# The sum of the N squared checksums must stay at or below
# NORM_SLACK * N * L^2. An honest vector with ||d|| <= L exceeds it with
# probability at most (5 e^-4)^(N/2), about 2^-86 for N = 50.
NORM_SLACK: int = 5

# Bytes of salt hashed with each share to form its digest.
SHARE_SALT_BYTES: int = 32

# Field elements travel as signed 64-bit integers on the wire.
MAX_FIELD_BITS: int = 63

# Fiat-Shamir challenges for the OR proofs live in [0, 2^CHALLENGE_BITS).
CHALLENGE_BITS: int = 256
CHALLENGE_SPACE: int = 1 << CHALLENGE_BITS

# Half-width of the sampling window used by rand_vector for a target norm.
RAND_VECTOR_WINDOW: int = 10000

# RFC 3526 §3, 2048-bit MODP group. Safe prime, (p-1)/2 is prime.
MODP_2048_PRIME: int = int(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF",
    16,
)

# RFC 2409 §6.2, 1024-bit MODP group (Oakley group 2). Safe prime. Too small
# for production use, kept for fast local runs and tests.
MODP_1024_PRIME: int = int(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE65381"
    "FFFFFFFFFFFFFFFF",
    16,
)

DEFAULT_GROUP_PRIME: int = MODP_2048_PRIME

# Seed used by derive_generators when the caller gives none.
GENERATOR_SEED: bytes = b"p4p-pedersen-generators-v1"

# Domain separation tags for hash_to_field.
DOMAIN_CHALLENGE_DIGEST: bytes = b"p4p/challenge-matrix"
DOMAIN_ROW_CONTEXT: bytes = b"p4p/row-context"
DOMAIN_OR_PROOF: bytes = b"p4p/or-proof"
DOMAIN_GENERATOR: bytes = b"p4p/generator"
DOMAIN_ROW_MASK: bytes = b"p4p/row-mask"
DOMAIN_SQUARE_PROOF: bytes = b"p4p/square-proof"
DOMAIN_NORM_CONTEXT: bytes = b"p4p/norm-context"

# Indices of the two aggregation servers.
SERVER_INDICES = (0, 1)
