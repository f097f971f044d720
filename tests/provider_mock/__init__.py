"""Fake providers for engine tests.

Usage:
    from provider_mock import FakeCloud, declare, fast_config, ref

    cloud = FakeCloud()
    cloud.provider("bucket", outputs=lambda rid, desired: {"arn": f"arn:{rid}"})
    nodes = [declare("bucket", "site", bucket="www.example.com")]
    reconciler = Reconciler(nodes, cloud.registry(), MemoryStateStore(), fast_config())
    report = await reconciler.apply()
"""

from .builders import declare, fast_config, ref
from .cloud import Call, FakeCloud, FakeProvider

__all__ = [
    "Call",
    "FakeCloud",
    "FakeProvider",
    "declare",
    "fast_config",
    "ref",
]
