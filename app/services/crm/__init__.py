"""CRM services.

Submodule Structure:
    crm/
    ├── imports/        - History import pipeline (normalize, queue, replay, finalize)
    ├── inbox/          - Inbound message ingestion shared by live traffic and imports
    ├── consolidation.py - Ticket transfer/merge between connections, force-close sweep
    ├── gateway.py      - Messaging gateway collaborator
    ├── tickets.py      - Ticket update collaborator
    └── errors.py       - Error taxonomy
"""
