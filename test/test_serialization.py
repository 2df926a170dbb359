import unittest
import json
import os
import shutil
import stat
import tempfile
import numpy as np

from jnn.config import set_default_dtype
from jnn.errors import (
    ShapeMismatchError,
    SerializationError,
    UnknownModuleKindError,
    UnsupportedVersionError,
    MalformedDocumentError,
    IOFailureError,
)
from jnn.tensor import Tensor
from jnn.module import Module, register_module, MODULE_REGISTRY
from jnn.activation import ReLU, LeakyReLU, Softmax
from jnn.nn import Linear, Embedding, Sequential, MLP
from jnn.layernorm import LayerNorm
from jnn.dropout import Dropout
from jnn.serialization import serialize, deserialize, dumps, loads, FORMAT_VERSION
from jnn.model_state import ModelState, save_module, load_module, module_exists


_previous_dtype = None


def setUpModule():
    global _previous_dtype
    _previous_dtype = set_default_dtype("float64")


def tearDownModule():
    set_default_dtype(_previous_dtype)


@register_module("TestCounter")
class Counter(Module):
    """Identity module that counts how often it was constructed."""

    instances = 0

    def __init__(self):
        super().__init__()
        Counter.instances += 1

    def forward(self, x):
        self.save_for_backward()
        return x

    def _backward(self, record, grad_output):
        return grad_output

    def describe(self):
        return {}


def build_model(dtype="float64", seed=0):
    rng = np.random.default_rng(seed)
    return Sequential(
        Linear(4, 8, dtype=dtype, rng=rng),
        ReLU(),
        LayerNorm(8, dtype=dtype),
        Sequential(Linear(8, 8, bias=False, dtype=dtype, rng=rng), LeakyReLU(0.2)),
        Dropout(0.1, seed=3),
        Linear(8, 2, dtype=dtype, rng=rng),
    )


class TestSerialization(unittest.TestCase):
    """Test module documents"""

    def assertSameParameters(self, original, restored):
        original_params = original.named_parameters()
        restored_params = restored.named_parameters()
        for (name, p), (restored_name, q) in zip(original_params, restored_params):
            self.assertEqual(name, restored_name)
            self.assertEqual(p.shape, q.shape)
            self.assertEqual(p.dtype, q.dtype)
            np.testing.assert_array_equal(p.data, q.data)
        self.assertEqual(len(original.parameters()), len(restored.parameters()))

    def test_document_layout(self):
        doc = serialize(Sequential(Linear(3, 2), ReLU()))
        self.assertEqual(list(doc), ["version", "kind", "config", "parameters", "children"])
        self.assertEqual(doc["version"], FORMAT_VERSION)
        self.assertEqual(doc["kind"], "Sequential")

        linear = doc["children"][0]
        self.assertEqual(linear["kind"], "Linear")
        self.assertNotIn("children", linear)
        self.assertEqual(linear["config"], {"in_features": 3, "out_features": 2, "bias": True, "dtype": "float64"})
        self.assertEqual([p["name"] for p in linear["parameters"]], ["weight", "bias"])
        self.assertEqual(linear["parameters"][0]["shape"], [3, 2])
        self.assertEqual(len(linear["parameters"][0]["values"]), 6)

        self.assertEqual(doc["children"][1], {"kind": "Activation", "config": {"function": "relu"}, "parameters": []})

    def test_document_is_json(self):
        text = dumps(build_model(), indent=2)
        self.assertEqual(json.loads(text), serialize(build_model()))

    def test_round_trip(self):
        """Structure, names, shapes and values survive a round trip"""
        model = build_model()
        restored = loads(dumps(model))

        self.assertIsInstance(restored, Sequential)
        self.assertEqual([m.kind for m in restored.modules()], [m.kind for m in model.modules()])
        self.assertSameParameters(model, restored)

        model.eval()
        restored.eval()
        x = Tensor(np.random.default_rng(5).standard_normal((3, 4)))
        np.testing.assert_array_equal(model(x).data, restored(x).data)

    def test_round_trip_float32_is_bit_exact(self):
        model = build_model(dtype="float32", seed=7)
        model[0].weight.set_value(np.full((4, 8), 1.0 / 3.0))
        restored = loads(dumps(model))
        self.assertEqual(restored[0].weight.dtype, np.float32)
        for p, q in zip(model.parameters(), restored.parameters()):
            np.testing.assert_array_equal(p.data.view(np.uint32), q.data.view(np.uint32))

    def test_round_trip_float64_is_bit_exact(self):
        model = Linear(3, 3)
        model.weight.set_value(np.array([[0.1, 1e-300, -np.pi], [1.0 / 3.0, 2.0 ** 0.5, 7e300], [0.0, -0.0, 1.5]]))
        restored = loads(dumps(model))
        np.testing.assert_array_equal(model.weight.data.view(np.uint64), restored.weight.data.view(np.uint64))

    def test_serialization_is_deterministic(self):
        model = build_model()
        self.assertEqual(dumps(model), dumps(model))

    def test_reserialize_is_identical(self):
        model = build_model()
        doc = serialize(model)
        self.assertEqual(serialize(deserialize(doc)), doc)
        self.assertEqual(dumps(loads(dumps(model))), dumps(model))

    def test_composite_module(self):
        """Modules that build their own children are filled in place"""
        mlp = MLP([3, 5, 2], activation="tanh", rng=np.random.default_rng(0))
        restored = loads(dumps(mlp))
        self.assertIsInstance(restored, MLP)
        self.assertEqual(restored.sizes, [3, 5, 2])
        self.assertEqual(restored.layers[1].function, "tanh")
        self.assertSameParameters(mlp, restored)

    def test_composite_config_mismatch(self):
        doc = serialize(MLP([3, 5, 2]))
        doc["children"][0]["children"][0]["config"]["out_features"] = 4
        with self.assertRaises(MalformedDocumentError):
            deserialize(doc)

    def test_other_modules(self):
        for module in [Embedding(6, 3), LayerNorm((2, 3), eps=1e-6), Dropout(0.25), Sequential()]:
            with self.subTest(kind=module.kind):
                doc = serialize(module)
                restored = deserialize(doc)
                self.assertIs(type(restored), type(module))
                self.assertEqual(restored.describe(), module.describe())
                self.assertEqual(serialize(restored), doc)

    def test_unknown_kind(self):
        doc = serialize(Linear(2, 2))
        doc["kind"] = "Conv9"
        with self.assertRaises(UnknownModuleKindError) as ctx:
            deserialize(doc)
        self.assertEqual(ctx.exception.kind, "Conv9")

    def test_unknown_nested_kind_builds_nothing(self):
        doc = {
            "version": "1.0",
            "kind": "Sequential",
            "config": {},
            "parameters": [],
            "children": [
                {"kind": "TestCounter", "config": {}, "parameters": []},
                {"kind": "Bogus", "config": {}, "parameters": []},
            ],
        }
        before = Counter.instances
        with self.assertRaises(UnknownModuleKindError):
            deserialize(doc)
        self.assertEqual(Counter.instances, before)

        doc["children"].pop()
        deserialize(doc)
        self.assertEqual(Counter.instances, before + 1)

    def test_unsupported_version(self):
        doc = serialize(Linear(2, 2))
        doc["version"] = "2.0"
        with self.assertRaises(UnsupportedVersionError):
            deserialize(doc)

    def test_newer_minor_version_is_accepted(self):
        doc = serialize(Linear(2, 2))
        doc["version"] = "1.7"
        self.assertIsInstance(deserialize(doc), Linear)

    def test_malformed_documents(self):
        good = serialize(Linear(2, 2))
        cases = {
            "not an object": [],
            "missing version": {k: v for k, v in good.items() if k != "version"},
            "bad version": dict(good, version="one"),
            "missing kind": {k: v for k, v in good.items() if k != "kind"},
            "config not an object": dict(good, config=[]),
            "parameters not a list": dict(good, parameters={}),
        }
        for label, doc in cases.items():
            with self.subTest(case=label):
                with self.assertRaises(MalformedDocumentError):
                    deserialize(doc)

    def test_malformed_parameters(self):
        def tampered(**changes):
            doc = serialize(Linear(3, 2))
            doc["parameters"][0].update(changes)
            return doc

        for label, doc in {
            "too few values": tampered(values=[1.0, 2.0]),
            "non-numeric value": tampered(values=["x"] * 6),
            "bad dtype": tampered(dtype="int8"),
            "other dtype": tampered(dtype="float32"),
            "wrong name": tampered(name="kernel"),
            "bad config": dict(serialize(Linear(3, 2)), config={"in_features": 3}),
        }.items():
            with self.subTest(case=label):
                with self.assertRaises(MalformedDocumentError):
                    deserialize(doc)

    def test_shape_mismatch(self):
        doc = serialize(Linear(3, 2))
        doc["parameters"][0]["shape"] = [2, 3]
        with self.assertRaises(ShapeMismatchError):
            deserialize(doc)

    def test_invalid_json(self):
        with self.assertRaises(MalformedDocumentError):
            loads("{not json")

    def test_unregistered_module(self):
        class Plain(Module):
            def describe(self):
                return {}

        with self.assertRaises(SerializationError):
            serialize(Plain())
        with self.assertRaises(SerializationError):
            serialize(Sequential(Plain()))

    def test_non_primitive_config(self):
        with self.assertRaises(SerializationError):
            serialize(Softmax(dim=(0, 1)))

    def test_numpy_scalar_config(self):
        """numpy scalar configuration values are written as plain JSON numbers"""
        modules = [
            Softmax(dim=np.int64(-1), temperature=np.float32(2.0)),
            LayerNorm(np.int64(4), eps=np.float32(1e-5), elementwise_affine=np.bool_(True)),
            Dropout(np.float64(0.3), seed=np.int64(7)),
        ]
        for module in modules:
            with self.subTest(kind=module.kind):
                doc = serialize(module)
                for value in doc["config"].values():
                    self.assertNotIsInstance(value, np.generic)
                restored = loads(dumps(module))
                self.assertEqual(restored.describe(), module.describe())
                self.assertEqual(serialize(restored), doc)

        self.assertEqual(serialize(Softmax(dim=np.int64(-1)))["config"]["dim"], -1)

    def test_unknown_root_kind_without_version(self):
        doc = {"kind": "Bogus", "config": {}, "parameters": []}
        with self.assertRaises(UnknownModuleKindError) as ctx:
            deserialize(doc)
        self.assertEqual(ctx.exception.kind, "Bogus")

        # a registered kind still needs a version
        with self.assertRaises(MalformedDocumentError):
            deserialize({"kind": "Linear", "config": {}, "parameters": []})

    def test_registry(self):
        self.assertIs(MODULE_REGISTRY["Linear"], Linear)
        self.assertIs(register_module("TestCounter")(Counter), Counter)
        with self.assertRaises(ValueError):
            register_module("Linear")(Counter)


class TestModelState(unittest.TestCase):
    """Test module saving and loading"""

    def setUp(self):
        """Set up test fixtures"""
        self.temp_dir = tempfile.mkdtemp()
        self.model_path = os.path.join(self.temp_dir, "test_model.json")

    def tearDown(self):
        """Clean up test fixtures"""
        shutil.rmtree(self.temp_dir)

    def test_save_and_load_model(self):
        """Test saving and loading a model"""
        original_model = build_model()

        # Save model
        additional_info = {"epoch": 10, "loss": 0.5}
        save_module(original_model, self.model_path, additional_info)

        # Check file exists
        self.assertTrue(os.path.exists(self.model_path))

        # Load model
        loaded_model, loaded_info = load_module(self.model_path)

        # Check additional info
        self.assertEqual(loaded_info["epoch"], 10)
        self.assertEqual(loaded_info["loss"], 0.5)

        # Check parameters are the same
        for orig_param, loaded_param in zip(original_model.parameters(), loaded_model.parameters()):
            np.testing.assert_array_equal(orig_param.data, loaded_param.data)
        self.assertEqual(serialize(loaded_model), serialize(original_model))

    def test_load_without_metadata(self):
        ModelState.save_module(Linear(2, 2), self.model_path)
        module, metadata = ModelState.load_module(self.model_path)
        self.assertIsInstance(module, Linear)
        self.assertEqual(metadata, {})

    def test_model_exists(self):
        """Test model existence check"""
        self.assertFalse(module_exists(self.model_path))
        save_module(Linear(2, 2), self.model_path)
        self.assertTrue(module_exists(self.model_path))

    def test_creates_parent_directories(self):
        path = os.path.join(self.temp_dir, "runs", "a", "model.json")
        save_module(Linear(2, 2), path)
        self.assertTrue(module_exists(path))

    def test_load_nonexistent_model(self):
        """Test loading a non-existent model"""
        with self.assertRaises(IOFailureError):
            load_module(os.path.join(self.temp_dir, "nonexistent_model.json"))
        with self.assertRaises(OSError):
            load_module(os.path.join(self.temp_dir, "nonexistent_model.json"))

    def test_load_invalid_json(self):
        with open(self.model_path, 'w') as f:
            f.write("{ truncated")
        with self.assertRaises(MalformedDocumentError):
            load_module(self.model_path)

    def test_failed_save_keeps_previous_file(self):
        save_module(Linear(2, 2), self.model_path)
        with open(self.model_path) as f:
            before = f.read()

        with self.assertRaises(SerializationError):
            save_module(Linear(3, 3), self.model_path, {"callback": object()})

        with open(self.model_path) as f:
            self.assertEqual(f.read(), before)
        self.assertEqual(os.listdir(self.temp_dir), ["test_model.json"])

    def test_load_non_utf8_file(self):
        with open(self.model_path, 'wb') as f:
            f.write(b'{"version": "1.0", "kind": "\xff\xfe"}')
        with self.assertRaises(MalformedDocumentError):
            load_module(self.model_path)

    @unittest.skipUnless(os.name == 'posix', "file modes are POSIX only")
    def test_saved_file_respects_umask(self):
        previous = os.umask(0o022)
        try:
            save_module(Linear(2, 2), self.model_path)
        finally:
            os.umask(previous)
        self.assertEqual(stat.S_IMODE(os.stat(self.model_path).st_mode), 0o644)

    def test_save_logs(self):
        with self.assertLogs('jnn.model_state', level='INFO') as logs:
            save_module(Linear(2, 2), self.model_path)
            load_module(self.model_path)
        self.assertEqual(len(logs.output), 2)
        self.assertIn(self.model_path, logs.output[0])


if __name__ == '__main__':
    unittest.main()
