"""Identity: who is signed in, and the provider that says so."""
