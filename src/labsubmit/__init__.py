"""Assignment submission service package.

This package implements the submission lifecycle of an academic assignment
platform and the orchestration of remote code execution for practical
assignments.  Student code is compiled and run by an external Piston
compatible backend; this service decides what to send, how long to wait,
when to retry and how the result lands on a submission.

The top‑level modules include:

* ``config`` – configuration handling for environment variables.
* ``errors`` – the error taxonomy shared by all components.
* ``models`` – Pydantic models for stored records and HTTP bodies.
* ``storage`` – pluggable record stores with atomic read‑modify‑write.
* ``access`` – sessions, roles and the table driven access guard.
* ``executor`` – language registry, execution client and orchestrator.
* ``submissions`` – assignments and the submission state machine.
* ``reports`` – typed grade aggregates.
* ``api`` – FastAPI application exposing HTTP endpoints.
"""
