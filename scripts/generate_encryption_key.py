#!/usr/bin/env python3
"""
Generate a Fernet key for the signature images stored under signatures/.

enrollpay.core.encryption builds a MultiFernet from ENCRYPTION_KEY (used to
encrypt and decrypt) followed by every key in ENCRYPTION_KEY_ROTATION
(comma-separated, decrypt only). To rotate, put the new key in
ENCRYPTION_KEY and move the old one into ENCRYPTION_KEY_ROTATION; signatures
written under the old key stay readable for consent PDFs.
"""
from cryptography.fernet import Fernet

if __name__ == "__main__":
    key = Fernet.generate_key().decode()
    print("=" * 60)
    print("New signature encryption key")
    print("=" * 60)
    print(key)
    print("\nFirst deployment (.env):")
    print(f"ENCRYPTION_KEY={key}")
    print("\nRotation (.env), keeping the previous key for decryption:")
    print(f"ENCRYPTION_KEY={key}")
    print("ENCRYPTION_KEY_ROTATION=<previous ENCRYPTION_KEY>[,<older keys>]")
    print("=" * 60)
