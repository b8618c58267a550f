"""Messaging authorization package

Decides which actors may exchange direct or group messages with each other.
Import the engine from `backend.messaging.engine`; adapters live in
`repo_db` (Postgres) and `repo_memory` (tests, dry runs).
"""
