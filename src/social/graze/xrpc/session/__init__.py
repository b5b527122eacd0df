"""
Session State

- store.py: CredentialStore, the single owned copy of the session credential
- notifier.py: CredentialUpdateNotifier, ordered observer fan-out on every change
- agent.py: AtProtoAgent, the session object that owns both and exposes calls
"""
