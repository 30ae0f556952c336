"""
G.711 μ-law helpers.

Only what the pacer needs to ramp a new utterance in from silence: μ-law to
linear PCM16 and back (audioop, or audioop-lts on Python 3.13+), and a linear
fade-in applied in the PCM domain.
"""

import array
import warnings

try:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DeprecationWarning)
        import audioop
except ImportError:
    import audioop_lts as audioop

SAMPLE_WIDTH = 2


def decode(data: bytes) -> bytes:
    """μ-law bytes to native-endian signed 16-bit PCM."""
    return audioop.ulaw2lin(data, SAMPLE_WIDTH)


def encode(pcm: bytes) -> bytes:
    """Native-endian signed 16-bit PCM to μ-law bytes."""
    return audioop.lin2ulaw(pcm, SAMPLE_WIDTH)


def fade_in(data: bytes, length: int) -> bytes:
    """
    Ramp the first ``length`` bytes of ``data`` linearly from silence to full
    level. Bytes past the ramp are returned unchanged.
    """
    length = min(length, len(data))
    if length <= 0:
        return bytes(data)
    samples = array.array("h")
    samples.frombytes(decode(data[:length]))
    for i in range(length):
        samples[i] = int(samples[i] * i / length)
    return encode(samples.tobytes()) + bytes(data[length:])
