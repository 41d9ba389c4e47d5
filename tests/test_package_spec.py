import unittest

from macdev.package_spec import PackageSpec, base_name, format_spec, is_python, parse_package_spec


class TestParsePackageSpec(unittest.TestCase):
    def test_unversioned_package(self) -> None:
        self.assertEqual(parse_package_spec("rust"), ("rust", None))

    def test_versioned_package(self) -> None:
        self.assertEqual(parse_package_spec("python@3.11"), ("python@3.11", "3.11"))

    def test_rightmost_at_sign_is_the_version_separator(self) -> None:
        self.assertEqual(parse_package_spec("node@lts@20"), ("node@lts@20", "20"))
        spec = PackageSpec.parse("node@lts@20")
        self.assertEqual(spec.name, "node@lts")
        self.assertEqual(spec.base_name, "node")

    def test_trailing_at_sign_yields_empty_version(self) -> None:
        self.assertEqual(parse_package_spec("package@"), ("package@", ""))
        self.assertEqual(PackageSpec.parse("package@").manifest_version, "")

    def test_canonical_round_trips_raw_identifier(self) -> None:
        for raw in ("rust", "python@3.11", "node@lts@20", "package@", "@", "openssl@3"):
            with self.subTest(raw=raw):
                self.assertEqual(PackageSpec.parse(raw).canonical, raw)

    def test_unversioned_manifest_version_is_star(self) -> None:
        self.assertEqual(PackageSpec.parse("rust").manifest_version, "*")


class TestHelpers(unittest.TestCase):
    def test_base_name_stops_at_first_at_sign(self) -> None:
        self.assertEqual(base_name("python@3.12"), "python")
        self.assertEqual(base_name("node@lts@20"), "node")
        self.assertEqual(base_name("rust"), "rust")

    def test_format_spec(self) -> None:
        self.assertEqual(format_spec("rust", "*"), "rust")
        self.assertEqual(format_spec("rust", None), "rust")
        self.assertEqual(format_spec("python", "3.11"), "python@3.11")
        self.assertEqual(format_spec("node@lts", "20"), "node@lts@20")

    def test_is_python(self) -> None:
        self.assertTrue(is_python("python"))
        self.assertTrue(is_python("python@3.12"))
        self.assertFalse(is_python("pythonista"))


if __name__ == "__main__":
    unittest.main()
