"""nathguard services.

Every inbound chat message flows through the security gateway:
- Quota Service admits or rate-limits the request
- PII, Policy and Safety services screen the original text
- Audit Service records the outcome without message text or raw PII
- Vault Service encrypts whatever the chat service stores
"""
