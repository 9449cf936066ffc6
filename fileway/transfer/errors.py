class TransferError(Exception):
    """A file transfer operation failed; the attempt is over."""
    pass


class ProtocolError(TransferError):
    """A peer sent a frame that is malformed, truncated or too large."""
    pass
