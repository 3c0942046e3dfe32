"""Backend identity service hand-off."""

from auth_redirector.backend.handoff import BackendHandoff, build_backend_record, encode_record

__all__ = ["BackendHandoff", "build_backend_record", "encode_record"]
