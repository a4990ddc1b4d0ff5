"""
Clinicflow - referral workflow and secure intake export

A clinic intake backend that:
- Moves referrals through a validated intake-to-treatment workflow
- Keeps an ordered audit timeline for every referral
- Bundles, encrypts and uploads intake packages for air-gapped retrieval
- Issues short-lived signed download links to the clinical system
"""

__version__ = "0.1.0"
