"""End Device Import Module.

This module provides bulk registration of LoRaWAN end devices:
- Decode an uploaded file (The Things Stack JSON or CSV)
- Fill in batch-level fallbacks (frequency plan, MAC and PHY versions)
- Validate every record before anything is submitted
- Register each device across the enabled stack components
- Report progress per record and a grouped failure summary

Architecture: Clean Architecture with Hexagonal (Ports & Adapters)
"""
