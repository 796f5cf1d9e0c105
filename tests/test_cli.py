"""End-to-end tests for the navigator-sealed command line."""
import base64

import orjson
import pytest

from navigator_sealed.cli import main, seal_secret
from navigator_sealed.crypto import DirectoryKeyStore, KeyRegistry, unseal
from navigator_sealed.data import SealedObject, SealingScope
from navigator_sealed.rotation import EXIT_ABORTED, EXIT_OK

from .conftest import TEST_KEY_BITS

SECRET = {
    "apiVersion": "v1",
    "kind": "Secret",
    "type": "Opaque",
    "metadata": {"name": "db", "namespace": "ns1", "labels": {"app": "db"}},
    "data": {"password": base64.b64encode(b"hunter2").decode("ascii")},
    "stringData": {"user": "admin"},
}


@pytest.fixture
def workdir(tmp_path):
    secret = tmp_path / "secret.json"
    secret.write_bytes(orjson.dumps(SECRET))
    return tmp_path


def _keys(path):
    return KeyRegistry(DirectoryKeyStore(path), key_bits=TEST_KEY_BITS).initialize()


class TestSealSecret:

    def test_seal_secret(self, registry):
        obj = seal_secret(SECRET, registry.active().public_key)
        assert obj.ref == ("ns1", "db")
        assert sorted(obj) == ["password", "user"]
        assert obj.template == {"type": "Opaque", "metadata": {"labels": {"app": "db"}}}
        assert unseal(obj["password"], registry, "ns1/db") == b"hunter2"
        assert unseal(obj["user"], registry, "ns1/db") == b"admin"

    def test_scope_and_overrides(self, registry):
        obj = seal_secret(
            SECRET, registry.active().public_key,
            scope=SealingScope.NAMESPACE, namespace="ns2",
        )
        assert obj.namespace == "ns2"
        assert obj["user"].scope_label == "ns2"

    def test_invalid_data(self, registry):
        doc = {"metadata": {"name": "db"}, "data": {"password": "***"}}
        with pytest.raises(ValueError):
            seal_secret(doc, registry.active().public_key)

    def test_missing_name(self, registry):
        with pytest.raises(ValueError):
            seal_secret({"stringData": {"a": "b"}}, registry.active().public_key)


class TestCommands:

    def test_full_rotation_cycle(self, workdir, capsys):
        keys = str(workdir / "keys")
        store = str(workdir / "objects")
        report_path = workdir / "report.json"

        assert main(["keygen", "--key-dir", keys, "--key-bits", "2048"]) == EXIT_OK
        first = _keys(keys).active().id

        assert main([
            "seal", "-i", str(workdir / "secret.json"), "--key-dir", keys, "--store", store,
        ]) == EXIT_OK
        assert "created ns1/db" in capsys.readouterr().out

        assert main(["keygen", "--key-dir", keys, "--key-bits", "2048", "--rotate"]) == EXIT_OK
        registry = _keys(keys)
        assert len(registry) == 2
        second = registry.active().id
        assert second != first

        code = main([
            "reencrypt", "--store", store, "-A", "--key-dir", keys,
            "--report", str(report_path),
        ])
        assert code == EXIT_OK
        report = orjson.loads(report_path.read_bytes())
        assert report["totals"]["succeeded"] == 1
        obj = SealedObject.from_json((workdir / "objects" / "ns1" / "db.json").read_bytes())
        assert {obj[f].key_fingerprint for f in obj} == {second}
        assert unseal(obj["password"], registry, "ns1/db") == b"hunter2"

        assert main([
            "prune", "--key-dir", keys, "--store", store, "--older-than", "0",
        ]) == EXIT_OK
        assert f"pruned {first}" in capsys.readouterr().out
        assert [p.id for p in _keys(keys).all()] == [second]

    def test_seal_with_certificate(self, workdir):
        keys = str(workdir / "keys")
        cert = workdir / "cert.pem"
        out = workdir / "sealed.json"
        assert main(["keygen", "--key-dir", keys, "--key-bits", "2048"]) == EXIT_OK
        assert main(["cert", "--key-dir", keys, "-o", str(cert)]) == EXIT_OK
        assert main([
            "seal", "-i", str(workdir / "secret.json"), "--cert", str(cert),
            "-o", str(out), "--scope", "cluster-wide",
        ]) == EXIT_OK
        obj = SealedObject.from_json(out.read_bytes())
        assert obj.scope is SealingScope.CLUSTER
        assert unseal(obj["user"], _keys(keys), "") == b"admin"

    def test_dry_run_leaves_store(self, workdir):
        keys = str(workdir / "keys")
        store = str(workdir / "objects")
        main(["keygen", "--key-dir", keys, "--key-bits", "2048"])
        main(["seal", "-i", str(workdir / "secret.json"), "--key-dir", keys, "--store", store])
        main(["keygen", "--key-dir", keys, "--key-bits", "2048", "--rotate"])
        path = workdir / "objects" / "ns1" / "db.json"
        before = path.read_bytes()

        assert main(["reencrypt", "--store", store, "-n", "ns1", "--key-dir", keys, "--dry-run"]) == EXIT_OK
        assert path.read_bytes() == before

    def test_malformed_document_still_writes_report(self, workdir):
        keys = str(workdir / "keys")
        store = workdir / "objects"
        report_path = workdir / "report.json"
        main(["keygen", "--key-dir", keys, "--key-bits", "2048"])
        main(["seal", "-i", str(workdir / "secret.json"), "--key-dir", keys, "--store", str(store)])
        (store / "ns1" / "broken.json").write_bytes(b"{not json")

        code = main([
            "reencrypt", "--store", str(store), "-A", "--key-dir", keys,
            "--report", str(report_path),
        ])
        assert code == EXIT_ABORTED
        report = orjson.loads(report_path.read_bytes())
        assert report["aborted"] is True
        assert report["abort_reason"].startswith("Fatal")

    def test_reencrypt_requires_namespace(self, workdir):
        assert main(["reencrypt", "--store", str(workdir)]) == EXIT_ABORTED

    def test_missing_keys(self, workdir):
        assert main(["cert", "--key-dir", str(workdir / "nothing")]) == EXIT_ABORTED
