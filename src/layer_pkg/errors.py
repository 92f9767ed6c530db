# layer_pkg/errors.py

class ShapeMismatch(ValueError):
    """ Raised when input blobs (or gradient buffers) do not have compatible shapes. """


class PreconditionViolation(RuntimeError):
    """ Raised when backward is called without a matching forward on the same layer. """
