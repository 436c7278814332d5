"""Quick Loans backend: profiles, loan applications and live support chat."""
