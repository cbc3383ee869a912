from datetime import datetime
import unittest

from shipit.utils import detect_arch, result_file_name, truncate


class UtilsTest(unittest.TestCase):
    def test_detect_arch(self) -> None:
        self.assertEqual(detect_arch("x86_64"), "amd64")
        self.assertEqual(detect_arch("aarch64"), "arm64")
        self.assertEqual(detect_arch("ppc64le"), "ppc64el")
        self.assertEqual(detect_arch("mips64"), "loongson3")
        self.assertEqual(detect_arch(" RISCV64\n"), "riscv64")
        self.assertIsNone(detect_arch("sparc64"))

    def test_result_file_name(self) -> None:
        self.assertEqual(
            result_file_name("arm64", "builder", datetime(2024, 1, 2, 3, 4, 5)),
            "shipit-arm64-builder-2024-01-02-03:04:05.txt",
        )

    def test_truncate(self) -> None:
        self.assertEqual(truncate("short"), "short")
        clipped = truncate("x" * 1500)
        self.assertEqual(len(clipped), 1000)
        self.assertTrue(clipped.endswith("..."))
        self.assertEqual(truncate("abcdef", limit=5), "ab...")


if __name__ == "__main__":
    unittest.main()
