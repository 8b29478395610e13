import os
import unittest
from collections import defaultdict
from unittest import mock

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
import pygame

from chip8 import Chip8
from chip8_pygame import BLUE, LIGHT_BLUE, Keypad, Screen, get_args, main


class TestArgs(unittest.TestCase):
    def test_defaults(self):
        args = get_args(["-f", "pong.ch8"])
        self.assertEqual(args.file, "pong.ch8")
        self.assertFalse(args.font_test)
        self.assertEqual(args.clock, 500)
        self.assertEqual(args.scale, 15)

    def test_font_test(self):
        args = get_args(["--font-test", "--clock", "700", "--scale", "4"])
        self.assertTrue(args.font_test)
        self.assertIsNone(args.file)
        self.assertEqual((args.clock, args.scale), (700, 4))

    def test_rom_or_font_test_is_required(self):
        with mock.patch("sys.stderr"):
            with self.assertRaises(SystemExit):
                get_args([])
            with self.assertRaises(SystemExit):
                get_args(["-f", "pong.ch8", "--font-test"])

    def test_rates_and_scale_must_be_positive(self):
        for argv in (["--clock", "0"], ["--clock", "-500"], ["--scale", "0"]):
            with self.subTest(argv=argv):
                with mock.patch("sys.stderr"):
                    with self.assertRaises(SystemExit):
                        get_args(["-f", "pong.ch8"] + argv)

    def test_missing_rom_exits(self):
        with self.assertRaises(SystemExit) as cm:
            main(["-f", "/does/not/exist.ch8"])
        self.assertIn("Unable to load the ROM", str(cm.exception.code))


class TestKeypad(unittest.TestCase):
    def test_translate(self):
        pressed = defaultdict(bool, {pygame.K_x: True, pygame.K_4: True, pygame.K_v: True})
        keys = Keypad().translate(pressed)
        self.assertEqual([k for k in range(16) if keys[k]], [0x0, 0xC, 0xF])

    def test_nothing_pressed(self):
        self.assertEqual(Keypad().translate(defaultdict(bool)), [False] * 16)


class TestScreen(unittest.TestCase):
    def setUp(self):
        pygame.display.init()
        self.screen = Screen(s=2)

    def tearDown(self):
        pygame.display.quit()

    def as_drawn(self, color):
        """the color as stored by the window surface, which may have a smaller depth"""
        surface = self.screen.surface
        return surface.unmap_rgb(surface.map_rgb(color))

    def test_surface_size(self):
        self.assertEqual(self.screen.surface.get_size(), (128, 64))

    def test_render(self):
        chip = Chip8()
        chip.display.draw_sprite(3, 1, [0x80])
        self.screen.render(chip)
        self.assertEqual(self.screen.surface.get_at((6, 2)), self.as_drawn(LIGHT_BLUE))
        self.assertEqual(self.screen.surface.get_at((7, 3)), self.as_drawn(LIGHT_BLUE))
        self.assertEqual(self.screen.surface.get_at((8, 2)), self.as_drawn(BLUE))
        chip.display.clear()
        self.screen.render(chip)
        self.assertEqual(self.screen.surface.get_at((6, 2)), self.as_drawn(BLUE))


if __name__ == "__main__":
    unittest.main()
