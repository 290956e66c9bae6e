from __future__ import annotations

from pathlib import Path
import tempfile
import textwrap
import unittest

from mobench.config_loader import MobenchConfig
from mobench.registry import BenchFunction, BenchmarkRegistry, discover_registry, scan_sources

from support import make_crate


class BenchmarkRegistryTests(unittest.TestCase):
    def test_list_is_sorted_and_unique(self) -> None:
        registry = BenchmarkRegistry.from_names(["lib::b", "lib::a", "lib::b"])
        self.assertEqual(registry.names(), ["lib::a", "lib::b"])
        self.assertEqual(len(registry), 2)
        self.assertIsInstance(registry.list()[0], BenchFunction)

    def test_find_by_full_or_short_name(self) -> None:
        registry = BenchmarkRegistry.from_names(["sample_fns::fibonacci", "sample_fns::hashing::sha"])
        self.assertEqual(registry.find("sample_fns::fibonacci").qualified_name, "sample_fns::fibonacci")
        self.assertEqual(registry.find("sha").qualified_name, "sample_fns::hashing::sha")
        self.assertIsNone(registry.find("nacci"))
        self.assertEqual(registry.find("sha").short_name, "sha")


class SourceScanTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.crate_dir = make_crate(self.root)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_scan_finds_annotated_functions(self) -> None:
        names = scan_sources(self.crate_dir, "bench_mobile")
        self.assertEqual(names, ["bench_mobile::fibonacci", "bench_mobile::checksum"])

    def test_scan_qualifies_module_paths(self) -> None:
        module = self.crate_dir / "src" / "hashing"
        module.mkdir()
        (module / "mod.rs").write_text(
            textwrap.dedent(
                """
                #[mobench_sdk::benchmark]
                #[inline(never)]
                pub(crate) fn sha256() {}
                """
            )
        )
        (module / "extra.rs").write_text("#[benchmark]\nfn blake() {}\n")
        names = scan_sources(self.crate_dir, "bench_mobile")
        self.assertIn("bench_mobile::hashing::sha256", names)
        self.assertIn("bench_mobile::hashing::extra::blake", names)

    def test_attribute_not_followed_by_function(self) -> None:
        (self.crate_dir / "src" / "lib.rs").write_text("#[benchmark]\nstruct NotAFunction;\nfn later() {}\n")
        self.assertEqual(scan_sources(self.crate_dir, "bench_mobile"), [])

    def test_configured_functions_take_precedence(self) -> None:
        config = MobenchConfig.from_mapping({"benchmarks": {"functions": ["bench_mobile::configured"]}})
        registry = discover_registry(config, self.crate_dir, "bench_mobile")
        self.assertEqual(registry.names(), ["bench_mobile::configured"])

    def test_discovery_falls_back_to_scan(self) -> None:
        registry = discover_registry(MobenchConfig(), self.crate_dir, "bench_mobile")
        self.assertEqual(registry.names(), ["bench_mobile::checksum", "bench_mobile::fibonacci"])

    def test_missing_src_directory(self) -> None:
        self.assertEqual(scan_sources(self.root / "nowhere", "x"), [])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
