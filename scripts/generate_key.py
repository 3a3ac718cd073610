#!/usr/bin/env python3
"""
Prints a fresh Fernet key for credential encryption at rest
"""
from cryptography.fernet import Fernet

if __name__ == "__main__":
    key = Fernet.generate_key()
    print(f"ENCRYPTION_KEY=base64:{key.decode()}")
    print("\nTambahkan baris ini ke file .env. Jangan ganti key setelah stok diimpor.")
