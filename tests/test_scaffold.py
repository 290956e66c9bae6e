from __future__ import annotations

from pathlib import Path, PurePosixPath
import io
import tempfile
import unittest
from contextlib import redirect_stdout

from mobench.config_loader import MobenchConfig
from mobench.console import Console
from mobench.scaffold import (
    ScaffoldContext,
    ensure_project,
    generate_project,
    project_exists,
    render_project,
    sanitize_bundle_id_component,
    to_pascal_case,
)
from mobench.types import Target


class ScaffoldTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.app_dir = Path(self.temp_dir.name) / "app"
        config = MobenchConfig.from_mapping(
            {
                "android": {"package": "com.example.bench", "min_sdk": 26},
                "ios": {"bundle_id": "com.example.runner", "deployment_target": "16.0"},
            }
        )
        self.context = ScaffoldContext.from_config(config, crate_name="bench-mobile", library_name="bench_mobile")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_helpers(self) -> None:
        self.assertEqual(to_pascal_case("bench_mobile-core"), "BenchMobileCore")
        self.assertEqual(sanitize_bundle_id_component("Bench_Mobile-1"), "benchmobile1")

    def test_context_defaults_function(self) -> None:
        self.assertEqual(self.context.default_function, "bench_mobile::my_benchmark")
        mapping = self.context.to_mapping()
        self.assertEqual(mapping["android"]["package_path"], "com/example/bench")
        self.assertEqual(mapping["project"]["pascal_name"], "BenchMobile")

    def test_render_android_project(self) -> None:
        rendered = dict(render_project(Target.ANDROID, self.context))
        activity = PurePosixPath("app/src/main/java/com/example/bench/MainActivity.kt")
        self.assertIn(activity, rendered)
        self.assertIn(PurePosixPath("settings.gradle"), rendered)
        self.assertIn("package com.example.bench", rendered[activity])
        self.assertIn('System.loadLibrary("bench_mobile")', rendered[activity])
        self.assertIn("minSdk 26", rendered[PurePosixPath("app/build.gradle")])
        for content in rendered.values():
            self.assertNotIn("{{", content)

    def test_render_ios_project(self) -> None:
        rendered = dict(render_project(Target.IOS, self.context))
        project_yml = rendered[PurePosixPath("BenchRunner/project.yml")]
        self.assertIn("../bench_mobile.xcframework", project_yml)
        self.assertIn("PRODUCT_BUNDLE_IDENTIFIER: com.example.runner", project_yml)
        self.assertIn('iOS: "16.0"', project_yml)
        self.assertIn(PurePosixPath("BenchRunner/BenchRunner/ContentView.swift"), rendered)

    def test_generate_and_detect(self) -> None:
        self.assertFalse(project_exists(Target.ANDROID, self.app_dir))
        written = generate_project(Target.ANDROID, self.app_dir, self.context, console=Console("none"))
        self.assertTrue(project_exists(Target.ANDROID, self.app_dir))
        self.assertIn(self.app_dir / "settings.gradle", written)
        self.assertFalse(ensure_project(Target.ANDROID, self.app_dir, self.context))

    def test_existing_files_are_kept_unless_forced(self) -> None:
        generate_project(Target.IOS, self.app_dir, self.context)
        project_yml = self.app_dir / "BenchRunner" / "project.yml"
        project_yml.write_text("custom")
        generate_project(Target.IOS, self.app_dir, self.context)
        self.assertEqual(project_yml.read_text(), "custom")
        generate_project(Target.IOS, self.app_dir, self.context, force=True)
        self.assertNotEqual(project_yml.read_text(), "custom")

    def test_dry_run_writes_nothing(self) -> None:
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            created = ensure_project(Target.IOS, self.app_dir, self.context, dry_run=True, console=Console(dry_run=True))
        self.assertTrue(created)
        self.assertFalse(self.app_dir.exists())
        self.assertIn("[DRY] would generate", buffer.getvalue())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
