import argparse
import os
import sys

os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
)

from chip8 import CPU_HZ, KEY_COUNT, SCREEN_HEIGHT, SCREEN_WIDTH, Chip8, Scheduler


# ******************** STATIC SECTION
# the usual layout, the left side of a qwerty keyboard mapped on the 4x4 hex keypad
#   1 2 3 4        1 2 3 C
#   Q W E R   ->   4 5 6 D
#   A S D F        7 8 9 E
#   Z X C V        A 0 B F
KEY_MAPPINGS = {
    K_1: 0x1, K_2: 0x2, K_3: 0x3, K_4: 0xC,
    K_q: 0x4, K_w: 0x5, K_e: 0x6, K_r: 0xD,
    K_a: 0x7, K_s: 0x8, K_d: 0x9, K_f: 0xE,
    K_z: 0xA, K_x: 0x0, K_c: 0xB, K_v: 0xF,
}

FONT_TEST_ROM = bytes([0x12, 0x00])     # JP 0x200, keeps the font on screen
SCALE = 15
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)


# ******************** UTILITIES SECTION
def positive_int(value):
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return number

def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 virtual machine")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("-f", "--file", help="input rom file")
    source.add_argument("--font-test", action="store_true", help="draw the built-in hex font instead of running a rom")
    parser.add_argument("--clock", type=positive_int, default=CPU_HZ, help=f"instructions per second (default {CPU_HZ})")
    parser.add_argument("--scale", type=positive_int, default=SCALE, help=f"size in pixels of a CHIP-8 pixel (default {SCALE})")
    return parser.parse_args(argv)


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def draw_cell(self, x, y):
        """fill the cell of a lit pixel, visible after refresh"""
        pygame.draw.rect(
            self.surface,
            self.foreground,
            (x * self.scale, y * self.scale, self.scale, self.scale)
        )

    @staticmethod
    def refresh():
        pygame.display.flip()

    def render(self, chip):
        """flush the whole frame buffer of the vm to the window"""
        self.surface.fill(self.background)
        for x, y in chip.display.lit():
            self.draw_cell(x, y)
        self.refresh()

class Keypad:
    def __init__(self, mappings=KEY_MAPPINGS):
        self.mappings = mappings

    def translate(self, pressed):
        """turn a pygame pressed keys sequence into the 16 states of the hex keypad"""
        keys = [False] * KEY_COUNT
        for physical, logical in self.mappings.items():
            if pressed[physical]:
                keys[logical] = True
        return keys

    def poll(self):
        return self.translate(pygame.key.get_pressed())


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    chip = Chip8()
    if args.file:
        try:
            chip.load_rom(args.file)
        except (OSError, ValueError) as e:
            sys.exit(f"Unable to load the ROM at path {args.file}: {e}")
    else:
        chip.draw_font_test()
        chip.load(FONT_TEST_ROM)
    # pygame initialization
    pygame.init()
    pygame.display.set_caption("font test" if args.font_test else os.path.basename(args.file))
    # IO
    s = Screen(s=args.scale)
    k = Keypad()
    scheduler = Scheduler(chip, k, s, cpu_hz=args.clock)
    clock = pygame.time.Clock()
    run = True

    def should_stop():
        nonlocal run
        # loop throught the event queue, this also keeps the pressed keys state fresh
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                run = False
            elif event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                run = False
        clock.tick(2 * args.clock)
        return not run

    # emulation loop
    try:
        scheduler.run(should_stop)
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
