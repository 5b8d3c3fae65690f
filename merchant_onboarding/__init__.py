"""
Nairobi CBD Merchant Onboarding

Merchant onboarding and verification:
1. Create merchants with a temporary password and setup token
2. Queue credential e-mails for a scheduled dispatch
3. Account setup via single-use, time-limited token
4. Document upload and completeness tracking
5. Admin approve/reject review with history
"""

from .service import OnboardingService

__all__ = ['OnboardingService']
