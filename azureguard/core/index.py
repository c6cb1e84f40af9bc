"""Resource index — key lookup and reference resolution."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator

from azureguard.core.attributes import iter_strings
from azureguard.core.model import Reference, ReferenceKind, Resource, resource_key
from azureguard.logger import logger

# Provider prefixes whose "<type>.<local_name>" fragments are recognized.
TYPE_PREFIXES: tuple[str, ...] = ("azurerm_", "azuread_", "azapi_")

_REFERENCE_RE = re.compile(
    r"(?<![A-Za-z0-9_])((?:"
    + "|".join(re.escape(p) for p in TYPE_PREFIXES)
    + r")[a-z0-9_]+)\.([A-Za-z0-9_-]+)"
)


def reference_fragments(text: str) -> list[tuple[str, str]]:
    """All (type, local_name) pairs embedded in *text*, in order of appearance."""
    return [(m.group(1), m.group(2)) for m in _REFERENCE_RE.finditer(text)]


class ResourceIndex:
    """Lookup keyed by ``type_name`` with best-effort reference resolution.

    The name fallback is a linear scan over all resources per lookup. Resource
    counts are in the hundreds to low thousands, so no secondary index is kept.
    """

    def __init__(self, resources: Iterable[Resource]) -> None:
        self._resources: dict[str, Resource] = {}
        for resource in resources:
            key = resource.key
            if key in self._resources:
                logger.warning("Duplicate resource key %s, keeping first declaration", key)
                continue
            self._resources[key] = resource
        self._by_name = sorted(
            self._resources.values(), key=lambda r: (-len(r.name), r.key)
        )
        self._cache: dict[tuple[str, str | None, bool, bool], Reference] = {}
        self._references: dict[str, list[Reference]] = {
            key: self._collect_references(resource)
            for key, resource in self._resources.items()
        }

    @classmethod
    def build(cls, resources: Iterable[Resource]) -> ResourceIndex:
        return cls(resources)

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, key: object) -> bool:
        return key in self._resources

    def __iter__(self) -> Iterator[Resource]:
        return iter(self._resources.values())

    def keys(self) -> list[str]:
        return list(self._resources)

    def lookup(self, key: str) -> Resource | None:
        return self._resources.get(key)

    def of_type(self, *types: str) -> list[Resource]:
        wanted = set(types)
        return [r for r in self._resources.values() if r.type in wanted]

    def references_of(self, key: str) -> list[Reference]:
        """References found in the attributes of *key*, resolved at build time."""
        return list(self._references.get(key, []))

    def resolve_reference(
        self,
        text: object,
        expected_type_prefix: str | None = None,
        fuzzy: bool = True,
        exact_type: bool = False,
    ) -> str | None:
        """Key of the resource *text* points at, or None.

        With *exact_type* the expected prefix must equal the resource type,
        so ``azurerm_lb`` does not also accept ``azurerm_lb_probe``.
        """
        if not isinstance(text, str) or not text:
            return None
        return self.reference(text, expected_type_prefix, fuzzy, exact_type=exact_type).resolved_key

    def reference(
        self,
        text: str,
        expected_type_prefix: str | None = None,
        fuzzy: bool = True,
        attribute_path: str = "",
        exact_type: bool = False,
    ) -> Reference:
        cache_key = (text, expected_type_prefix, fuzzy, exact_type)
        cached = self._cache.get(cache_key)
        if cached is None:
            cached = self._resolve(text, expected_type_prefix, fuzzy, exact_type)
            self._cache[cache_key] = cached
        if attribute_path:
            return cached.model_copy(update={"attribute_path": attribute_path})
        return cached

    def infer_type(self, text: object) -> str | None:
        """Resource type named by the first typed fragment in *text*."""
        if not isinstance(text, str):
            return None
        fragments = reference_fragments(text)
        if fragments:
            return fragments[0][0]
        return None

    def _resolve(self, text: str, prefix: str | None, fuzzy: bool, exact_type: bool) -> Reference:
        def accepts(rtype: str) -> bool:
            if prefix is None:
                return True
            return rtype == prefix if exact_type else rtype.startswith(prefix)

        exact = self._resources.get(text)
        if exact is not None and accepts(exact.type):
            return Reference(raw=text, kind=ReferenceKind.TYPED, resolved_key=text)

        for rtype, name in reference_fragments(text):
            if not accepts(rtype):
                continue
            key = resource_key(rtype, name)
            if key in self._resources:
                return Reference(raw=text, kind=ReferenceKind.TYPED, resolved_key=key)

        if fuzzy:
            for resource in self._by_name:
                if not accepts(resource.type):
                    continue
                display = resource.attributes.get("name")
                if resource.name in text or (isinstance(display, str) and display == text):
                    return Reference(
                        raw=text, kind=ReferenceKind.NAME, resolved_key=resource.key
                    )

        logger.debug("Unresolved reference %r (expected %s)", text, prefix or "any")
        return Reference(raw=text, kind=ReferenceKind.UNRESOLVED)

    def _collect_references(self, resource: Resource) -> list[Reference]:
        refs: list[Reference] = []
        for path, value in iter_strings(resource.attributes):
            for rtype, name in reference_fragments(value):
                key = resource_key(rtype, name)
                if key == resource.key:
                    continue
                kind = ReferenceKind.TYPED if key in self._resources else ReferenceKind.UNRESOLVED
                refs.append(
                    Reference(
                        raw=f"{rtype}.{name}",
                        kind=kind,
                        resolved_key=key if key in self._resources else None,
                        attribute_path=path,
                    )
                )
        return refs
