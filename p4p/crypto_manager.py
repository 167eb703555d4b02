"""Sealing of share submissions in transit: X25519 KEM, HKDF and AES-GCM."""

from __future__ import annotations

import base64
import json
import os
from typing import Tuple

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .bound_proof import BoundProof
from .data_models import SealedSubmission, ShareSubmission


class CryptoManager:
    """加密管理器，处理密钥派生与KEM封装 / Key derivation and KEM encapsulation.

    Only the addressed server can open the share, checksum responses and
    commitment openings; the public bound proof travels in the clear and is
    bound to the ciphertext as associated data.
    """

    KEM_INFO = b"p4p-kem-share"

    @staticmethod
    def encrypt_data(data: dict, key: bytes, associated_data: bytes | None = None) -> Tuple[bytes, bytes]:
        """使用AES-GCM加密数据 / Encrypt serialized data with AES-GCM."""
        aesgcm = AESGCM(key)
        nonce = os.urandom(12)
        serialized_data = json.dumps(data).encode()
        ciphertext = aesgcm.encrypt(nonce, serialized_data, associated_data)
        return ciphertext, nonce

    @staticmethod
    def decrypt_data(ciphertext: bytes, nonce: bytes, key: bytes, associated_data: bytes | None = None) -> dict:
        """使用AES-GCM解密数据 / Decrypt ciphertext produced by AES-GCM."""
        aesgcm = AESGCM(key)
        plaintext = aesgcm.decrypt(nonce, ciphertext, associated_data)
        return json.loads(plaintext.decode())

    @staticmethod
    def generate_kem_keypair() -> Tuple[x25519.X25519PrivateKey, bytes]:
        """生成X25519密钥对用于KEM封装 / Generate an X25519 key pair for KEM encapsulation."""
        private_key = x25519.X25519PrivateKey.generate()
        public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return private_key, public_key

    @staticmethod
    def encapsulate_key(receiver_public_bytes: bytes, context: bytes) -> Tuple[bytes, bytes]:
        """使用接收者公钥封装对称密钥，返回(对称密钥, 发送方临时公钥)."""
        receiver_public = x25519.X25519PublicKey.from_public_bytes(receiver_public_bytes)
        ephemeral_private = x25519.X25519PrivateKey.generate()
        shared_secret = ephemeral_private.exchange(receiver_public)
        symmetric_key = CryptoManager._derive_symmetric_key(shared_secret, context)
        ephemeral_public_bytes = ephemeral_private.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return symmetric_key, ephemeral_public_bytes

    @staticmethod
    def decapsulate_key(ephemeral_public_bytes: bytes, receiver_private: x25519.X25519PrivateKey, context: bytes) -> bytes:
        """解封装对称密钥 / Decapsulate the symmetric key using receiver's private key."""
        ephemeral_public = x25519.X25519PublicKey.from_public_bytes(ephemeral_public_bytes)
        shared_secret = receiver_private.exchange(ephemeral_public)
        return CryptoManager._derive_symmetric_key(shared_secret, context)

    @staticmethod
    def share_context(peer_id: int, server_index: int, round_id: int) -> bytes:
        return f"p4p-share-{peer_id}-{server_index}-{round_id}".encode()

    @staticmethod
    def seal_submission(submission: ShareSubmission, server_public_bytes: bytes) -> SealedSubmission:
        """封装份额提交 / Encrypt the private part of a submission for one server."""
        context = CryptoManager.share_context(submission.peer_id, submission.server_index, submission.round_id)
        symmetric_key, kem_public = CryptoManager.encapsulate_key(server_public_bytes, context)
        encrypted_data, nonce = CryptoManager.encrypt_data(
            submission.private_payload(), symmetric_key, submission.proof.fingerprint().encode()
        )
        return SealedSubmission(
            peer_id=submission.peer_id,
            server_index=submission.server_index,
            round_id=submission.round_id,
            encrypted_data=encrypted_data,
            nonce=nonce,
            kem_public=kem_public,
            proof=submission.proof,
        )

    @staticmethod
    def open_submission(sealed: SealedSubmission, server_private: x25519.X25519PrivateKey) -> ShareSubmission:
        """Raises cryptography.exceptions.InvalidTag if the envelope or its proof was altered."""
        context = CryptoManager.share_context(sealed.peer_id, sealed.server_index, sealed.round_id)
        symmetric_key = CryptoManager.decapsulate_key(sealed.kem_public, server_private, context)
        payload = CryptoManager.decrypt_data(
            sealed.encrypted_data, sealed.nonce, symmetric_key, sealed.proof.fingerprint().encode()
        )
        return ShareSubmission(
            peer_id=sealed.peer_id,
            round_id=sealed.round_id,
            server_index=sealed.server_index,
            share=ShareSubmission.share_from_payload(payload),
            responses=tuple(int(v) for v in payload["responses"]),
            openings=tuple(int(v) for v in payload["openings"]),
            proof=sealed.proof,
            salt=str(payload["salt"]),
        )

    @staticmethod
    def serialize_sealed_submission(sealed: SealedSubmission) -> bytes:
        """序列化加密份额包 / Deterministic JSON wire form."""
        payload = {
            'peer_id': sealed.peer_id,
            'server_index': sealed.server_index,
            'round_id': sealed.round_id,
            'nonce': base64.b64encode(sealed.nonce).decode(),
            'encrypted_data': base64.b64encode(sealed.encrypted_data).decode(),
            'kem_public': base64.b64encode(sealed.kem_public).decode(),
            'proof': sealed.proof.to_dict(),
        }
        return json.dumps(payload, sort_keys=True).encode()

    @staticmethod
    def deserialize_sealed_submission(data: bytes) -> SealedSubmission:
        payload = json.loads(data.decode())
        return SealedSubmission(
            peer_id=int(payload['peer_id']),
            server_index=int(payload['server_index']),
            round_id=int(payload['round_id']),
            encrypted_data=base64.b64decode(payload['encrypted_data']),
            nonce=base64.b64decode(payload['nonce']),
            kem_public=base64.b64decode(payload['kem_public']),
            proof=BoundProof.from_dict(payload['proof']),
        )

    @staticmethod
    def _derive_symmetric_key(shared_secret: bytes, context: bytes) -> bytes:
        """通过HKDF从共享秘密导出对称密钥."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=context or CryptoManager.KEM_INFO,
            backend=default_backend(),
        )
        return hkdf.derive(shared_secret)
