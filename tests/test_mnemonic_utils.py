"""
Tests for BIP-39 helpers (mnemonic_utils.py).
"""

import unittest

from keystone_core.mnemonic_utils import (
    generate_mnemonic,
    normalize_mnemonic,
    validate_mnemonic,
)

VALID_12 = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


class TestGenerate(unittest.TestCase):

    def test_default_is_12_words(self):
        self.assertEqual(len(generate_mnemonic().split()), 12)

    def test_256_bits_is_24_words(self):
        self.assertEqual(len(generate_mnemonic(256).split()), 24)

    def test_generated_phrase_validates(self):
        self.assertTrue(validate_mnemonic(generate_mnemonic()))

    def test_phrases_differ(self):
        self.assertNotEqual(generate_mnemonic(), generate_mnemonic())

    def test_bad_strength(self):
        with self.assertRaises(ValueError):
            generate_mnemonic(100)


class TestValidate(unittest.TestCase):

    def test_known_vector(self):
        self.assertTrue(validate_mnemonic(VALID_12))

    def test_bad_checksum(self):
        self.assertFalse(validate_mnemonic(VALID_12.replace("about", "abandon")))

    def test_wrong_word_count(self):
        self.assertFalse(validate_mnemonic("abandon " * 11))
        self.assertFalse(validate_mnemonic(""))

    def test_word_not_in_list(self):
        self.assertFalse(validate_mnemonic(VALID_12.replace("about", "zzzzz")))

    def test_extra_whitespace_tolerated(self):
        self.assertTrue(validate_mnemonic("  " + VALID_12.replace(" ", "  ") + "\n"))


class TestNormalize(unittest.TestCase):

    def test_lowercases_and_collapses(self):
        self.assertEqual(normalize_mnemonic("  ABANDON\tAbandon  about "), "abandon abandon about")


if __name__ == "__main__":
    unittest.main()
