import json
import os

import yaml

_MANIFEST_KEYS = {"resources", "actions", "variables", "locals", "outputs"}


# Loader that tolerates intrinsic tags (!Ref, !Sub, etc.) without raising an
# error, so detect_format can read manifests that use them.
class _TagTolerantLoader(yaml.SafeLoader):
    pass

_TagTolerantLoader.add_multi_constructor(
    "!",
    lambda loader, suffix, node: loader.construct_yaml_str(node)
    if isinstance(node, yaml.ScalarNode) else None,
)


def _looks_like_manifest(doc) -> bool:
    if not isinstance(doc, dict) or not doc:
        return False
    return set(doc) <= _MANIFEST_KEYS and bool({"resources", "actions"} & set(doc))


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'yaml', or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "terraform"

    if ext == ".json":
        try:
            with open(filepath) as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "unknown"
        return "yaml" if _looks_like_manifest(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                doc = yaml.load(fh, Loader=_TagTolerantLoader)
        except (OSError, yaml.YAMLError):
            return "unknown"
        return "yaml" if _looks_like_manifest(doc) else "unknown"

    return "unknown"
