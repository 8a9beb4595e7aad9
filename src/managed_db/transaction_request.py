"""Request shaping shared by transactions and single-use reads."""

from typing import Any

from managed_db.codec import Query, encode_query, encode_value
from managed_db.models.options import TransactionOptions


def _duration(seconds: float) -> str:
    """Format seconds as a JSON Duration ("1.5s")."""
    text = f"{seconds:.9f}".rstrip("0").rstrip(".")
    return f"{text or 0}s"


class TransactionRequest:
    """Builds the request bodies a transaction sends for one set of options.

    The session name is not included; ``Session.request`` scopes each call.
    """

    def __init__(self, options: TransactionOptions | None = None) -> None:
        """Initialize with the options of the owning transaction."""
        self.options = options or TransactionOptions()

    @staticmethod
    def format_timestamp_options(options: TransactionOptions) -> dict[str, Any]:
        """Convert read timestamp settings into a wire ``readOnly`` clause."""
        formatted: dict[str, Any] = {}
        if options.strong is not None:
            formatted["strong"] = options.strong
        if options.read_timestamp is not None:
            formatted["readTimestamp"] = encode_value(options.read_timestamp)
        if options.min_read_timestamp is not None:
            formatted["minReadTimestamp"] = encode_value(options.min_read_timestamp)
        if options.exact_staleness is not None:
            formatted["exactStaleness"] = _duration(options.exact_staleness)
        if options.max_staleness is not None:
            formatted["maxStaleness"] = _duration(options.max_staleness)
        if options.return_read_timestamp is not None:
            formatted["returnReadTimestamp"] = options.return_read_timestamp
        return formatted

    @classmethod
    def single_use(cls, options: TransactionOptions) -> dict[str, Any]:
        """Transaction selector for a single-use read-only request."""
        return {"singleUse": {"readOnly": cls.format_timestamp_options(options)}}

    def begin_request(self) -> dict[str, Any]:
        """Body of a beginTransaction call."""
        if self.options.read_only:
            read_only = {"returnReadTimestamp": True}
            read_only.update(self.format_timestamp_options(self.options))
            return {"options": {"readOnly": read_only}}
        return {"options": {"readWrite": {}}}

    def execute_request(
        self,
        query: Query,
        *,
        transaction_id: str | None = None,
        resume_token: str | None = None,
        seqno: int | None = None,
    ) -> dict[str, Any]:
        """Body of an executeSql / executeStreamingSql call."""
        body = encode_query(query)
        if transaction_id is not None:
            body["transaction"] = {"id": transaction_id}
        if resume_token:
            body["resumeToken"] = resume_token
        if seqno is not None:
            body["seqno"] = str(seqno)
        return body

    def commit_request(self, transaction_id: str) -> dict[str, Any]:
        """Body of a commit call."""
        return {"transactionId": transaction_id}

    def rollback_request(self, transaction_id: str) -> dict[str, Any]:
        """Body of a rollback call."""
        return {"transactionId": transaction_id}
