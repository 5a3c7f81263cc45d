from .errors import MediaServiceError
from .formats import FormatSet, ResolvedFormat, SelectionPolicy, normalize
from .merge_tokens import MergePair, MergeTokenStore
from .paths import StoragePaths, build_storage_paths
from .resolver_chain import ResolverChain, RetryPolicy
from .runtime import get_runtime_info

__all__ = [
    "FormatSet",
    "MediaServiceError",
    "MergePair",
    "MergeTokenStore",
    "ResolvedFormat",
    "ResolverChain",
    "RetryPolicy",
    "SelectionPolicy",
    "StoragePaths",
    "build_storage_paths",
    "get_runtime_info",
    "normalize",
]
