import json
import pathlib
import tempfile
import unittest
import warnings

import numpy as np
import torch

import netbridge
from netbridge import (
    UNINITIALIZED_KEY,
    BlobRecord,
    Bridge,
    BridgeError,
    Context,
    LayerWeights,
    to_host,
)
from tests.net_utils import SMALL_NET, random_images

SHARED_NET = {
    "inputs": [{"name": "x", "shape": [1, 2]}],
    "layers": [
        {"name": "fc", "type": "inner_product", "bottom": ["x"], "top": ["a"],
         "params": {"num_output": 2}},
        {"name": "fc", "type": "inner_product", "bottom": ["a"], "top": ["b"],
         "params": {"num_output": 2, "bias_term": False}},
        {"name": "act", "type": "tanh", "bottom": ["b"], "top": ["b"]},
        {"name": "out", "type": "inner_product", "bottom": ["b"], "top": ["c"],
         "params": {"num_output": 1}},
    ],
}


class BridgeTestCase(unittest.TestCase):
    definition = SMALL_NET

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.directory = pathlib.Path(self._tmp.name)
        self.param_file = self.directory / "net.json"
        self.param_file.write_text(json.dumps(self.definition), encoding="utf-8")
        self.model_file = self.directory / "weights.pt"
        torch.save({}, self.model_file)
        self.bridge = Bridge(Context(mode="cpu"))

    def init(self):
        return self.bridge("init", str(self.param_file), str(self.model_file))


class DispatchTests(BridgeTestCase):
    def test_every_command_is_registered(self):
        self.assertEqual(
            set(netbridge.COMMANDS),
            {
                "forward", "backward", "get_gradients", "get_features", "init",
                "is_initialized", "set_mode_cpu", "set_mode_gpu", "set_phase_train",
                "set_phase_test", "set_device", "get_weights", "get_blobs",
                "get_init_key", "reset", "read_mean",
            },
        )

    def test_no_command(self):
        with self.assertLogs("netbridge.bridge", level="ERROR"):
            with self.assertRaisesRegex(BridgeError, "An API command is required"):
                self.bridge()

    def test_unknown_command(self):
        with self.assertLogs("netbridge.bridge", level="ERROR") as logs:
            with self.assertRaisesRegex(BridgeError, "API command not recognized"):
                self.bridge("fly")
        self.assertIn("fly", logs.output[0])
        with self.assertRaises(BridgeError):
            self.bridge(42)

    def test_wrong_number_of_arguments(self):
        for args in [("forward",), ("init", "a"), ("get_gradients", [], "x"), ("reset", 1)]:
            with self.subTest(command=args[0]):
                with self.assertLogs("netbridge.bridge", level="ERROR"):
                    with self.assertRaisesRegex(BridgeError, "Wrong number of arguments"):
                        self.bridge(*args)
        with self.assertRaisesRegex(BridgeError, "Usage"):
            self.bridge("read_mean")

    def test_commands_need_a_net(self):
        images = random_images((5, 6, 3, 2))
        for args in [
            ("forward", [images]),
            ("backward", [np.zeros((1, 1, 3, 2), dtype=np.float32)]),
            ("get_gradients", [images], "conv1", [0]),
            ("get_features", [images], "conv1"),
            ("get_weights",),
            ("get_blobs",),
        ]:
            with self.subTest(command=args[0]):
                with self.assertRaisesRegex(BridgeError, "Initialize"):
                    self.bridge(*args)

    def test_module_level_call(self):
        self.assertIsInstance(netbridge.call("is_initialized"), bool)
        self.assertIs(netbridge.default_bridge(), netbridge.default_bridge())


class LifecycleTests(BridgeTestCase):
    def test_init_and_reset(self):
        self.assertFalse(self.bridge("is_initialized"))
        self.assertEqual(self.bridge("get_init_key"), UNINITIALIZED_KEY)
        with self.assertLogs("netbridge", level="INFO"):
            key = self.init()
        self.assertTrue(self.bridge("is_initialized"))
        self.assertGreaterEqual(key, 0)
        self.assertLess(key, 2**31)
        self.assertEqual(self.bridge("get_init_key"), key)
        with self.assertLogs("netbridge.bridge", level="INFO") as logs:
            self.assertIsNone(self.bridge("reset"))
        self.assertIn("Network reset", logs.output[0])
        self.assertFalse(self.bridge("is_initialized"))
        self.assertEqual(self.bridge("get_init_key"), UNINITIALIZED_KEY)
        # reset twice is harmless
        self.bridge("reset")

    def test_init_missing_file(self):
        with self.assertRaises(OSError):
            self.bridge("init", str(self.directory / "missing.json"), str(self.model_file))
        self.assertFalse(self.bridge("is_initialized"))

    def test_phase_and_mode(self):
        self.bridge("set_phase_train")
        self.assertEqual(self.bridge.context.phase, "train")
        self.bridge("set_phase_test")
        self.assertEqual(self.bridge.context.phase, "test")
        self.init()
        self.bridge("set_mode_cpu")
        self.assertEqual(self.bridge.context.mode, "cpu")
        self.bridge("set_device", 0.0)
        self.assertEqual(self.bridge.context.device_id, 0)

    @unittest.skipIf(torch.cuda.is_available(), "CUDA present")
    def test_gpu_mode_without_cuda(self):
        with self.assertRaises(RuntimeError):
            self.bridge("set_mode_gpu")
        self.assertEqual(self.bridge.context.mode, "cpu")

    @unittest.skipUnless(torch.cuda.is_available(), "CUDA required")
    def test_gpu_round_trip(self):
        self.init()
        images = random_images((5, 6, 3, 2))
        cpu_out = self.bridge("forward", [images])
        self.bridge("set_mode_gpu")
        gpu_out = self.bridge("forward", [images])
        np.testing.assert_allclose(gpu_out[0], cpu_out[0], rtol=1e-4, atol=1e-5)
        self.bridge("set_mode_cpu")


class ForwardBackwardTests(BridgeTestCase):
    def setUp(self):
        super().setUp()
        self.init()
        self.images = random_images((5, 6, 3, 2))

    def test_forward(self):
        (prob,) = self.bridge("forward", [self.images])
        self.assertEqual(prob.shape, (1, 1, 3, 2))
        self.assertEqual(prob.dtype, np.float32)
        np.testing.assert_allclose(prob.sum(axis=2), 1.0, rtol=1e-5)

    def test_forward_accepts_any_layout_with_the_right_count(self):
        (a,) = self.bridge("forward", [self.images])
        flat = np.array(self.images.reshape(-1, order="F"))
        (b,) = self.bridge("forward", [flat])
        np.testing.assert_array_equal(a, b)

    def test_forward_validation(self):
        with self.assertRaisesRegex(BridgeError, "one array per network blob"):
            self.bridge("forward", [self.images, self.images])
        with self.assertRaisesRegex(BridgeError, "list of arrays"):
            self.bridge("forward", self.images)
        with self.assertRaisesRegex(BridgeError, "single-precision"):
            self.bridge("forward", [self.images.astype(np.float64)])
        with self.assertRaisesRegex(BridgeError, "Input size"):
            self.bridge("forward", [self.images[:4]])

    def test_backward(self):
        self.bridge("forward", [self.images])
        top_diff = np.zeros((1, 1, 3, 2), dtype=np.float32)
        top_diff[0, 0, 1, 0] = 1.0
        (data_diff,) = self.bridge("backward", [top_diff])
        self.assertEqual(data_diff.shape, (5, 6, 3, 2))
        # batch item 1 received no gradient
        np.testing.assert_array_equal(data_diff[..., 1], 0.0)
        self.assertGreater(np.abs(data_diff[..., 0]).sum(), 0.0)

        net = self.bridge.net
        torch.testing.assert_close(
            torch.from_numpy(data_diff.copy()),
            torch.from_numpy(to_host(net.input_blobs[0].diff).copy()),
        )

    def test_backward_before_forward(self):
        with self.assertRaisesRegex(BridgeError, "forward"):
            self.bridge("backward", [np.zeros((1, 1, 3, 2), dtype=np.float32)])

    def test_get_blobs(self):
        self.bridge("forward", [self.images])
        self.bridge("backward", [np.ones((1, 1, 3, 2), dtype=np.float32)])
        records = self.bridge("get_blobs")
        self.assertEqual(
            [r.blob_names for r in records], ["data", "conv1", "pool1", "fc", "prob"]
        )
        self.assertIsInstance(records[0], BlobRecord)
        np.testing.assert_array_equal(records[0].data, self.images)
        for record in records:
            self.assertEqual(record.data.shape, record.diff.shape)
        self.assertEqual(records[1].data.shape, (5, 6, 4, 2))
        np.testing.assert_array_equal(records[4].diff, 1.0)


class WeightsTests(BridgeTestCase):
    definition = SHARED_NET

    def test_layers_sharing_a_name_are_grouped(self):
        self.init()
        records = self.bridge("get_weights")
        self.assertEqual([r.layer_names for r in records], ["fc", "out"])
        self.assertIsInstance(records[0], LayerWeights)
        self.assertEqual(
            [w.shape for w in records[0].weights],
            [(1, 1, 2, 2), (1, 1, 1, 2), (1, 1, 2, 2)],
        )
        self.assertEqual([w.shape for w in records[1].weights], [(1, 1, 2, 1), (1, 1, 1, 1)])

    def test_weights_come_from_model_file(self):
        torch.save(
            {"out": [torch.tensor([[2.0, -3.0]]), torch.tensor([0.25])]},
            self.model_file,
        )
        self.init()
        out = self.bridge("get_weights")[1]
        np.testing.assert_array_equal(out.weights[0].reshape(-1), [2.0, -3.0])
        np.testing.assert_array_equal(out.weights[1].reshape(-1), [0.25])

    def test_grouped_record_round_trips(self):
        saved = {
            "fc": [
                torch.tensor([[1.0, 2.0], [3.0, 4.0]]),
                torch.tensor([0.5, -0.5]),
                torch.tensor([[-1.0, 0.0], [0.0, -1.0]]),
            ],
            "out": [torch.tensor([[2.0, -3.0]]), torch.tensor([0.25])],
        }
        torch.save(saved, self.model_file)
        self.init()
        records = self.bridge("get_weights")
        for record in records:
            tensors = saved[record.layer_names]
            self.assertEqual(len(record.weights), len(tensors))
            for host, tensor in zip(record.weights, tensors):
                np.testing.assert_array_equal(host, to_host(tensor))

    def test_entry_for_one_layer_goes_to_the_first(self):
        self.init()
        initial = self.bridge("get_weights")[0].weights
        torch.save(
            {"fc": [torch.eye(2), torch.ones(2)]},
            self.model_file,
        )
        self.init()
        fc = self.bridge("get_weights")[0].weights
        np.testing.assert_array_equal(fc[0], to_host(torch.eye(2)))
        np.testing.assert_array_equal(fc[1], to_host(torch.ones(2)))
        np.testing.assert_array_equal(fc[2], initial[2])


class GradientTests(BridgeTestCase):
    def setUp(self):
        super().setUp()
        self.init()
        self.images = random_images((5, 6, 3, 2))

    def test_shape_and_chunking(self):
        grads = self.bridge("get_gradients", [self.images], "conv1", [2, 0, 3])
        self.assertEqual(grads.shape, (5, 6, 3, 3))
        self.assertEqual(grads.dtype, np.float32)

        chunks = self.bridge.net.calc_gradients_prefilled("conv1", [2, 0, 3])
        first, second = [to_host(c.diff) for c in chunks]
        np.testing.assert_array_equal(grads[..., 0], first[..., 0])
        np.testing.assert_array_equal(grads[..., 1], first[..., 1])
        np.testing.assert_array_equal(grads[..., 2], second[..., 0])

    def test_channel_ids_are_rounded(self):
        a = self.bridge("get_gradients", [self.images], "conv1", [1.2, 2.6])
        b = self.bridge("get_gradients", [self.images], "conv1", np.array([1, 3]))
        np.testing.assert_array_equal(a, b)

    def test_channel_validation(self):
        with self.assertRaisesRegex(BridgeError, "greater than zero"):
            self.bridge("get_gradients", [self.images], "conv1", [-1])
        with self.assertRaisesRegex(BridgeError, "must not be empty"):
            self.bridge("get_gradients", [self.images], "conv1", [])
        with self.assertRaisesRegex(BridgeError, "out of range"):
            self.bridge("get_gradients", [self.images], "conv1", [4])
        with self.assertRaisesRegex(BridgeError, "finite"):
            self.bridge("get_gradients", [self.images], "conv1", [float("nan")])
        with self.assertRaisesRegex(BridgeError, "finite"):
            self.bridge("get_gradients", [self.images], "conv1", [0, float("inf")])
        for ids in (["a"], [object()]):
            with self.subTest(ids=ids):
                with self.assertRaisesRegex(BridgeError, "must be numbers"):
                    self.bridge("get_gradients", [self.images], "conv1", ids)

    def test_unknown_layer(self):
        with self.assertRaisesRegex(BridgeError, "layer with that name does not exist"):
            self.bridge("get_gradients", [self.images], "conv7", [0])
        with self.assertRaisesRegex(BridgeError, "layer name"):
            self.bridge("get_gradients", [self.images], 3, [0])

    def test_input_dims_are_strict(self):
        flat = np.array(self.images.reshape(-1, order="F"))
        with self.assertRaisesRegex(BridgeError, "width"):
            self.bridge("get_gradients", [flat], "conv1", [0])
        with self.assertRaisesRegex(BridgeError, "batch size"):
            self.bridge("get_gradients", [self.images[..., :1]], "conv1", [0])


class FeatureTests(BridgeTestCase):
    def setUp(self):
        super().setUp()
        self.init()
        self.images = random_images((5, 6, 3, 2))

    def test_features(self):
        (pool,) = self.bridge("get_features", [self.images], "pool1")
        self.assertEqual(pool.shape, (2, 3, 4, 2))
        (conv,) = self.bridge("get_features", [self.images], "relu1")
        self.assertGreaterEqual(conv.min(), 0.0)

    def test_unknown_layer(self):
        with self.assertRaisesRegex(BridgeError, "layer with that name does not exist"):
            self.bridge("get_features", [self.images], "fc9")


class ReadMeanTests(BridgeTestCase):
    def test_npy(self):
        mean = np.arange(3 * 4 * 5, dtype=np.float32).reshape(3, 4, 5)
        path = self.directory / "mean.npy"
        np.save(path, mean)
        with self.assertWarnsRegex(UserWarning, "BGR"):
            host = self.bridge("read_mean", str(path))
        self.assertEqual(host.shape, (5, 4, 3, 1))
        self.assertEqual(host[4, 3, 2, 0], mean[2, 3, 4])

    def test_npz(self):
        path = self.directory / "mean.npz"
        np.savez(path, mean=np.ones((1, 3, 2, 2), dtype=np.float32))
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            host = self.bridge("read_mean", str(path))
        self.assertEqual(host.shape, (2, 2, 3, 1))

    def test_npz_without_mean_key_uses_first_array(self):
        path = self.directory / "mean.npz"
        np.savez(path, np.full((3, 2, 2), 7.0, dtype=np.float32))
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            host = self.bridge("read_mean", str(path))
        self.assertEqual(host.shape, (2, 2, 3, 1))
        self.assertTrue(np.all(host == 7.0))

    def test_fewer_axes_use_the_legacy_view(self):
        per_channel = self.directory / "channels.npy"
        np.save(per_channel, np.array([104.0, 117.0, 123.0], dtype=np.float32))
        matrix = self.directory / "matrix.npy"
        values = np.arange(8, dtype=np.float32).reshape(2, 4)
        np.save(matrix, values)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            host = self.bridge("read_mean", str(per_channel))
            self.assertEqual(host.shape, (1, 1, 1, 3))
            np.testing.assert_array_equal(host.reshape(-1), [104.0, 117.0, 123.0])
            host = self.bridge("read_mean", str(matrix))
        self.assertEqual(host.shape, (1, 1, 4, 2))
        self.assertEqual(host[0, 0, 3, 1], values[1, 3])

    def test_unreadable(self):
        path = self.directory / "mean.binaryproto"
        path.write_bytes(b"\x00\x01garbage")
        for target in (path, self.directory / "missing.npy"):
            with self.subTest(target=target.name):
                with self.assertRaisesRegex(BridgeError, "Couldn't read the file"):
                    self.bridge("read_mean", str(target))


class InPlaceInputTests(BridgeTestCase):
    definition = {
        "inputs": [{"name": "x", "shape": [1, 2]}],
        "layers": [{"name": "relu", "type": "relu", "bottom": ["x"], "top": ["x"]}],
    }

    def setUp(self):
        super().setUp()
        self.init()
        self.x = np.asfortranarray(np.array([-1.0, 2.0], dtype=np.float32).reshape(1, 1, 2, 1))

    def test_gradients(self):
        grads = self.bridge("get_gradients", [self.x], "relu", [0, 1])
        self.assertEqual(grads.shape, (1, 1, 2, 2))
        np.testing.assert_array_equal(grads[0, 0, :, 0], [0.0, 0.0])
        np.testing.assert_array_equal(grads[0, 0, :, 1], [0.0, 1.0])

    def test_backward(self):
        (out,) = self.bridge("forward", [self.x])
        np.testing.assert_array_equal(out.reshape(-1), [0.0, 2.0])
        (diff,) = self.bridge("backward", [np.ones_like(out)])
        np.testing.assert_array_equal(diff.reshape(-1), [0.0, 1.0])
