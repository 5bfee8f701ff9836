"""
CredVault Credential Manager
Copyright (c) 2025

LEGAL NOTICE AND THREAT MODEL:
This tool is for personal use only. It stores credentials exported from your
own browsers, encrypted at rest, on a machine you own or administer. Passwords
are only ever decrypted on explicit request against a key you supply. It must
never be used to collect credentials from devices or accounts you do not own.
"""

__version__ = "1.0.0"
