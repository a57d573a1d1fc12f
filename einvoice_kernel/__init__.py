"""
E-Invoice Kernel

Invoice numbering and submission core for FBR digital invoicing:
- Gap-free, collision-free per-business sequence numbers
- Table-guarded invoice submission state machine
- Classified FBR error handling with bounded retries
- Single-flight submission via database leases
"""

__version__ = "0.1.0"
