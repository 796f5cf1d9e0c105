from enum import Enum
from typing import Any, NamedTuple, Optional, Union
from collections.abc import Iterator, Mapping, MutableMapping
import copy
import orjson
import jsonpickle
from jsonpickle.unpickler import loadclass
from datamodel import BaseModel
from .conf import (
    SCOPE_ANNOTATION,
    SEALED_KIND,
    SEALED_API_VERSION
)
from .crypto.engine import Envelope
from .exceptions import TamperedError


class ModelHandler(jsonpickle.handlers.BaseHandler):
    """ModelHandler.
    This class can handle with serializable Data Models.
    """
    def flatten(self, obj, data):
        data['__dict__'] = self.context.flatten(obj.__dict__, reset=False)
        return data

    def restore(self, obj):
        module_and_type = obj['py/object']
        mdl = loadclass(module_and_type)
        cls = mdl.__new__(mdl) if hasattr(mdl, '__new__') else object.__new__(mdl)
        cls.__dict__ = self.context.restore(obj['__dict__'], reset=False)
        return cls

jsonpickle.handlers.registry.register(BaseModel, ModelHandler, base=True)


class SealingScope(str, Enum):
    """How strictly a sealed value is bound to its identity."""
    STRICT = 'strict'
    NAMESPACE = 'namespace-wide'
    CLUSTER = 'cluster-wide'


class ObjectRef(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class ScopeClaim(NamedTuple):
    """Identity asserted by whoever asks to unseal a value."""
    namespace: str
    name: str
    scope: SealingScope = SealingScope.STRICT

    def label(self) -> str:
        """Scope label used as additional authenticated data."""
        scope = SealingScope(self.scope)
        if scope is SealingScope.STRICT:
            return f"{self.namespace}/{self.name}"
        if scope is SealingScope.NAMESPACE:
            return self.namespace
        return ""


class BackupRecord(BaseModel):
    """Snapshot of a SealedObject taken before it is overwritten."""
    namespace: str
    name: str
    version: str
    taken_at: str
    document: dict


class SealedObject(MutableMapping[str, Envelope]):
    """Sealed resource: named envelopes plus identity metadata.

    Envelopes are kept in their text form and parsed on access, so a single
    corrupted field surfaces as ``TamperedError`` for that object only.
    """

    def __init__(
        self,
        namespace: str,
        name: str,
        encrypted_data: Optional[Mapping[str, Union[Envelope, str]]] = None,
        *,
        scope: Union[SealingScope, str] = SealingScope.STRICT,
        template: Optional[dict] = None,
        version: Optional[str] = None
    ) -> None:
        if not namespace:
            raise ValueError("SealedObject requires a namespace")
        if not name:
            raise ValueError("SealedObject requires a name")
        self._namespace = namespace
        self._name = name
        self._scope = SealingScope(scope)
        self._template = copy.deepcopy(template) if template else {}
        self._version = version
        self._data: dict[str, str] = {}
        if encrypted_data:
            for key, value in encrypted_data.items():
                self[key] = value

    def __repr__(self) -> str:
        return (
            f'<SealedObject {self.ref} [scope:{self._scope.value}, '
            f'version:{self._version}] fields={sorted(self._data)}>'
        )

    # --- Properties ---

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def name(self) -> str:
        return self._name

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self._namespace, self._name)

    @property
    def scope(self) -> SealingScope:
        return self._scope

    @property
    def template(self) -> dict:
        return self._template

    @property
    def version(self) -> Optional[str]:
        return self._version

    @version.setter
    def version(self, value: Optional[str]) -> None:
        self._version = value

    def claim(self) -> ScopeClaim:
        return ScopeClaim(self._namespace, self._name, self._scope)

    def raw(self, key: str) -> str:
        """Text form of one envelope."""
        return self._data[key]

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> Envelope:
        return Envelope.from_text(self._data[key])

    def __setitem__(self, key: str, value: Union[Envelope, str]) -> None:
        if not key:
            raise ValueError("Field name cannot be empty")
        if isinstance(value, Envelope):
            value = value.to_text()
        elif not isinstance(value, str):
            raise TypeError(
                f"Field {key!r} must be an Envelope or its text form"
            )
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    # --- Key migration helpers ---

    def outdated(self, active_fp: str) -> list[str]:
        """Field names not sealed under ``active_fp``.

        A field that cannot be parsed is reported as outdated so the
        re-encryption attempt surfaces the error.
        """
        stale = []
        for key in self._data:
            try:
                envelope = self[key]
            except TamperedError:
                stale.append(key)
                continue
            if envelope.key_fingerprint != active_fp:
                stale.append(key)
        return stale

    def replace(self, envelopes: Mapping[str, Envelope]) -> "SealedObject":
        """Copy of this object with some envelopes replaced.

        Identity, scope, template and version token are preserved.
        """
        clone = SealedObject(
            self._namespace,
            self._name,
            scope=self._scope,
            template=self._template,
            version=self._version,
        )
        clone._data = dict(self._data)
        for key, envelope in envelopes.items():
            clone[key] = envelope
        return clone

    # --- Serialization ---

    def to_dict(self) -> dict:
        metadata = {
            'name': self._name,
            'namespace': self._namespace,
            'annotations': {SCOPE_ANNOTATION: self._scope.value},
        }
        if self._version is not None:
            metadata['resourceVersion'] = self._version
        spec: dict[str, Any] = {'encryptedData': dict(self._data)}
        if self._template:
            spec['template'] = copy.deepcopy(self._template)
        return {
            'apiVersion': SEALED_API_VERSION,
            'kind': SEALED_KIND,
            'metadata': metadata,
            'spec': spec,
        }

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "SealedObject":
        """Build a SealedObject from its document form.

        Raises:
            ValueError: If required metadata is missing.
        """
        try:
            metadata = doc['metadata']
            spec = doc.get('spec') or {}
        except (KeyError, TypeError, AttributeError) as err:
            raise ValueError(f"Invalid sealed object document: {err}") from err
        annotations = metadata.get('annotations') or {}
        version = metadata.get('resourceVersion')
        return cls(
            metadata.get('namespace', ''),
            metadata.get('name', ''),
            spec.get('encryptedData') or {},
            scope=annotations.get(SCOPE_ANNOTATION, SealingScope.STRICT.value),
            template=spec.get('template'),
            version=str(version) if version is not None else None,
        )

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict(), option=orjson.OPT_INDENT_2)

    @classmethod
    def from_json(cls, data: Union[bytes, str]) -> "SealedObject":
        return cls.from_dict(orjson.loads(data))

    def encode(self, obj: Any) -> str:
        """encode

            Encode an object using jsonpickle.
        Args:
            obj (Any): Object to be encoded using jsonpickle

        Raises:
            RuntimeError: Error converting data to json.

        Returns:
            str: json version of the data
        """
        try:
            return jsonpickle.encode(obj)
        except Exception as err:
            raise RuntimeError(err) from err

    @staticmethod
    def decode(value: str) -> Any:
        """decode.

            Decoding a jsonpickle-encoded value.
        Raises:
            RuntimeError: Error converting data from json.
        """
        try:
            return jsonpickle.decode(value)
        except Exception as err:
            raise RuntimeError(err) from err
