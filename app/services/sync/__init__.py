"""
Inventory Sync Service

Keeps employees and their devices in step between the identity directory
(people, account status, registered devices) and the device management
service (hardware and software inventory).

Key components:
- Matchers: Resolve device observations from either source to one record
- Reconciler: Pick one current owner per device and keep assignment history
- Adapters: Typed clients for the two external sources
- Orchestrator: Run directory then device sync and close every run
"""
