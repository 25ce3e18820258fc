"""
Escrow domain app: deals, milestones, payouts and their audit ledger.
"""
