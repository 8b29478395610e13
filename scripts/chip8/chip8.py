# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite


import os
import random
import sys
import time
from collections import namedtuple
from enum import Enum
from functools import wraps


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

FONT_START_ADDRESS = 0x000
FONT_GLYPH_SIZE = 5
MEMORY_SIZE = 4096
ADDRESS_MASK = 0xFFF
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_SIZE = 16
REGISTER_COUNT = 16
KEY_COUNT = 16
VF = 0xF
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
CPU_HZ = 500
TIMER_HZ = 60


# ******************** UTILITIES SECTION
def asm(mnemonic):
    """decorator to print out the ASM of the instruction being executed

    the mnemonic is a format string filled with the fields of the decoded instruction,
    it is also kept on the handler so that opcodes can be disassembled without running them
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(self, ins):
            mem_addr = self.pc      # the handler may move the pc, keep the address it was fetched from
            action = fn(self, ins)
            if DEBUG: print(f"mem_addr: 0x{mem_addr:04x}    instruction: {mnemonic.format(**ins._asdict())}")
            return action
        wrapper_fn.mnemonic = mnemonic
        return wrapper_fn
    return decorator

def warn(msg):
    print(f"WARNING: {msg}", file=sys.stderr)


# ******************** INSTRUCTION SECTION
class Instruction(namedtuple("Instruction", ["opcode", "msn", "nnn", "n", "x", "y", "kk"])):
    """a decoded opcode, created fresh every cycle"""
    __slots__ = ()

    @property
    def addr(self):
        return self.nnn


class PcAction(Enum):
    """what the cpu has to do with the pc once a handler has run"""
    NEXT = 2    # advance to the following instruction
    SKIP = 4    # conditional skip taken, jump over the following instruction
    JUMP = 0    # the handler already set the pc
    WAIT = -1   # hold the pc on the current instruction (waiting for a key)


def decode(opcode):
    """split a 16-bit opcode in its fields, always masking before shifting"""
    return Instruction(
        opcode=opcode,
        msn=(opcode & 0xF000) >> 12,
        nnn=opcode & 0x0FFF,
        n=opcode & 0x000F,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        kk=opcode & 0x00FF,
    )


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH 16 SLOTS AND A WRAPPING STACK POINTER
class Stack:
    def __init__(self, size=STACK_SIZE):
        self.slots = [0] * size
        self.sp = 0

    def __repr__(self):
        return f"Stack(sp={self.sp}, slots={[hex(a) for a in self.slots]})"

    def push(self, address):
        """store the address at the stack pointer, then move the pointer up (wrapping around)"""
        self.slots[self.sp] = address & 0xFFFF
        self.sp = (self.sp + 1) % len(self.slots)

    def pop(self):
        """move the pointer down (wrapping around), then read the address it points at"""
        self.sp = (self.sp - 1) % len(self.slots)
        return self.slots[self.sp]

# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)

    def __setitem__(self, address, value):
        """programs can write anywhere but in the interpreter area, where the font lives"""
        address &= ADDRESS_MASK
        if address < ROM_START_ADDRESS:
            warn(f"write of 0x{value & 0xFF:02x} to reserved address 0x{address:03x} ignored")
            return
        self.inner[address] = value & 0xFF

    def __getitem__(self, address):
        return self.inner[address & ADDRESS_MASK]

    def load(self, rom):
        """copy a program image at the start address, the rest of the memory is left untouched"""
        if len(rom) > MAX_ROM_SIZE:
            raise ValueError(f"ROM is {len(rom)} bytes long, at most {MAX_ROM_SIZE} bytes fit in memory")
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = rom

    def load_rom(self, path):
        """load ROM file from user specified path, OSError is raised if it can't be read"""
        with open(path, mode='rb') as f:
            rom = f.read()
        self.load(rom)
        if DEBUG: print(f"The ROM at path {path} has been loaded successfully ({len(rom)} bytes)")


# ******************** DISPLAY SECTION
class FrameBuffer:
    """monochrome grid of pixels, sprites are XORed on it wrapping around both axes"""

    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.pixels = [False] * w * h

    def __getitem__(self, pos):
        x, y = pos
        return self.pixels[(y % self.h) * self.w + (x % self.w)]

    def clear(self):
        self.pixels = [False] * self.w * self.h

    def lit(self):
        """return the coordinates of every pixel that is ON"""
        return [(i % self.w, i // self.w) for i, p in enumerate(self.pixels) if p]

    def draw_sprite(self, x, y, rows):
        """XOR an 8 pixels wide sprite at (x, y), return True if any pixel has been erased"""
        collision = False
        for row, sprite_byte in enumerate(rows):
            y_coordinate = (y + row) % self.h
            for col in range(8):
                if not sprite_byte & (0x80 >> col):
                    continue
                x_coordinate = (x + col) % self.w
                idx = y_coordinate * self.w + x_coordinate
                # the only case when a pixel gets erased is when it was ON and is turned ON again
                if self.pixels[idx]:
                    collision = True
                self.pixels[idx] = not self.pixels[idx]
        return collision


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rng=None):
        self.mem = Memory()
        self.stack = Stack()
        self.display = FrameBuffer()
        self.v_regs = bytearray(REGISTER_COUNT)     # a bytearray refuses values that have not been truncated
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero
        self.keys = [False] * KEY_COUNT
        self.waiting_for_key = None     # register waiting for a key press, None while running
        self.rng = rng or random.Random()
        self.instructions = {
            0x0: {
                0xE0: self._clear_screen,
                0xEE: self._return,
            },
            0x1: self._jump,
            0x2: self._call_addr,
            0x3: self._skip_if_eq,
            0x4: self._skip_if_not_eq,
            0x5: self._skip_if_eq_regs,
            0x6: self._set_vk,
            0x7: self._add_to_vk,
            0x8: {
                0x0: self._set_vx_to_vy,
                0x1: self._set_vx_or_vy,
                0x2: self._set_vx_and_vy,
                0x3: self._set_vx_xor_vy,
                0x4: self._add_vx_vy,
                0x5: self._sub_vx_vy,
                0x6: self._shr,
                0x7: self._subn_vx_vy,
                0xE: self._shl,
            },
            0x9: self._skip_if_not_eq_regs,
            0xA: self._set_idx,
            0xB: self._jump_plus,
            0xC: self._random_byte_and,
            0xD: self._to_screen,
            0xE: {
                0x9E: self._skip_if_pressed,
                0xA1: self._skip_if_not_pressed,
            },
            0xF: {
                0x07: self._set_vx_dt,
                0x0A: self._wait_keypress,
                0x15: self._set_dt_vx,
                0x18: self._set_st,
                0x1E: self._add_to_idx,
                0x29: self._select_char,
                0x33: self._bcd_repr,
                0x55: self._store_vregs,
                0x65: self._load_vregs,
            },
        }
        # field picking the instruction inside each family sharing the same top nibble
        self.family_keys = {0x0: "kk", 0x8: "n", 0xE: "kk", 0xF: "kk"}

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{list(self.v_regs)}"
        timers = f"DT:{self.dt} | ST:{self.st}"
        stack = f"STACK:{self.stack}"
        state = f"WAITING_FOR_KEY:V{self.waiting_for_key:X}" if self.waiting else "RUNNING"
        return f"{registers}\n{timers}\n{stack}\n{state}"

    @property
    def waiting(self):
        return self.waiting_for_key is not None

    @property
    def sound_active(self):
        """the buzzer should sound while the sound timer is non-zero"""
        return self.st > 0

    def load(self, rom):
        self.mem.load(rom)

    def load_rom(self, path):
        self.mem.load_rom(path)

    @asm("SYS 0x{nnn:03x}")
    def _sys(self, ins):
        """jump to a machine code routine, ignored by modern interpreters"""
        return PcAction.NEXT

    @asm("CLS")
    def _clear_screen(self, ins):
        self.display.clear()
        return PcAction.NEXT

    @asm("RET")
    def _return(self, ins):
        """return from a subroutine, landing on the instruction following the CALL"""
        self.pc = self.stack.pop()
        return PcAction.NEXT

    @asm("JP 0x{nnn:03x}")
    def _jump(self, ins):
        self.pc = ins.nnn
        return PcAction.JUMP

    @asm("CALL 0x{nnn:03x}")
    def _call_addr(self, ins):
        self.stack.push(self.pc)
        self.pc = ins.nnn
        return PcAction.JUMP

    @asm("SE V{x:X}, 0x{kk:02x}")
    def _skip_if_eq(self, ins):
        return PcAction.SKIP if self.v_regs[ins.x] == ins.kk else PcAction.NEXT

    @asm("SNE V{x:X}, 0x{kk:02x}")
    def _skip_if_not_eq(self, ins):
        return PcAction.SKIP if self.v_regs[ins.x] != ins.kk else PcAction.NEXT

    @asm("SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, ins):
        return PcAction.SKIP if self.v_regs[ins.x] == self.v_regs[ins.y] else PcAction.NEXT

    @asm("SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, ins):
        return PcAction.SKIP if self.v_regs[ins.x] != self.v_regs[ins.y] else PcAction.NEXT

    @asm("LD V{x:X}, 0x{kk:02x}")
    def _set_vk(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[ins.x] = ins.kk
        return PcAction.NEXT

    @asm("ADD V{x:X}, 0x{kk:02x}")
    def _add_to_vk(self, ins):
        """add to the value already present in one of the variable registers, VF is left alone"""
        self.v_regs[ins.x] = (self.v_regs[ins.x] + ins.kk) & 0xFF
        return PcAction.NEXT

    @asm("LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, ins):
        self.v_regs[ins.x] = self.v_regs[ins.y]
        return PcAction.NEXT

    @asm("OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, ins):
        self.v_regs[ins.x] |= self.v_regs[ins.y]
        return PcAction.NEXT

    @asm("AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, ins):
        self.v_regs[ins.x] &= self.v_regs[ins.y]
        return PcAction.NEXT

    @asm("XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, ins):
        self.v_regs[ins.x] ^= self.v_regs[ins.y]
        return PcAction.NEXT

    # for the flag instructions the result is stored first and VF last,
    # so that when x is F the flag is what survives

    @asm("ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, ins):
        """set Vx = Vx + Vy, VF = carry"""
        total = self.v_regs[ins.x] + self.v_regs[ins.y]
        self.v_regs[ins.x] = total & 0xFF
        self.v_regs[VF] = 1 if total > 0xFF else 0
        return PcAction.NEXT

    @asm("SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, ins):
        """set Vx = Vx - Vy, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vx - vy) & 0xFF
        self.v_regs[VF] = 1 if vx >= vy else 0
        return PcAction.NEXT

    @asm("SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, ins):
        """set Vx = Vy - Vx, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vy - vx) & 0xFF
        self.v_regs[VF] = 1 if vy >= vx else 0
        return PcAction.NEXT

    @asm("SHR V{x:X}")
    def _shr(self, ins):
        """set Vx = Vx SHR 1, VF = the bit shifted out"""
        lsb = self.v_regs[ins.x] & 0x1
        self.v_regs[ins.x] = self.v_regs[ins.x] >> 1
        self.v_regs[VF] = lsb
        return PcAction.NEXT

    @asm("SHL V{x:X}")
    def _shl(self, ins):
        """set Vx = Vx SHL 1, VF = the bit shifted out"""
        msb = (self.v_regs[ins.x] & 0x80) >> 7
        self.v_regs[ins.x] = (self.v_regs[ins.x] << 1) & 0xFF
        self.v_regs[VF] = msb
        return PcAction.NEXT

    @asm("LD I, 0x{nnn:03x}")
    def _set_idx(self, ins):
        self.idx = ins.nnn
        return PcAction.NEXT

    @asm("JP V0, 0x{nnn:03x}")
    def _jump_plus(self, ins):
        self.pc = (ins.nnn + self.v_regs[0x0]) & ADDRESS_MASK
        return PcAction.JUMP

    @asm("RND V{x:X}, 0x{kk:02x}")
    def _random_byte_and(self, ins):
        self.v_regs[ins.x] = self.rng.randint(0, 255) & ins.kk
        return PcAction.NEXT

    @asm("DRW V{x:X}, V{y:X}, {n}")
    def _to_screen(self, ins):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = self.v_regs[ins.x], self.v_regs[ins.y]
        rows = [self.mem[self.idx + i] for i in range(ins.n)]
        self.v_regs[VF] = 0
        if self.display.draw_sprite(x, y, rows):
            self.v_regs[VF] = 1
        return PcAction.NEXT

    @asm("SKP V{x:X}")
    def _skip_if_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        key = self.v_regs[ins.x] & 0xF
        return PcAction.SKIP if self.keys[key] else PcAction.NEXT

    @asm("SKNP V{x:X}")
    def _skip_if_not_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        key = self.v_regs[ins.x] & 0xF
        return PcAction.SKIP if not self.keys[key] else PcAction.NEXT

    @asm("LD V{x:X}, DT")
    def _set_vx_dt(self, ins):
        self.v_regs[ins.x] = self.dt
        return PcAction.NEXT

    @asm("LD V{x:X}, K")
    def _wait_keypress(self, ins):
        """wait for a key press and store its value in Vx, see set_keys"""
        self.waiting_for_key = ins.x
        return PcAction.WAIT

    @asm("LD DT, V{x:X}")
    def _set_dt_vx(self, ins):
        self.dt = self.v_regs[ins.x]
        return PcAction.NEXT

    @asm("LD ST, V{x:X}")
    def _set_st(self, ins):
        self.st = self.v_regs[ins.x]
        return PcAction.NEXT

    @asm("ADD I, V{x:X}")
    def _add_to_idx(self, ins):
        self.idx = (self.idx + self.v_regs[ins.x]) & 0xFFFF
        return PcAction.NEXT

    @asm("LD F, V{x:X}")
    def _select_char(self, ins):
        """set I to location of sprite for digit Vx"""
        self.idx = FONT_START_ADDRESS + (self.v_regs[ins.x] & 0xF) * FONT_GLYPH_SIZE
        return PcAction.NEXT

    @asm("LD B, V{x:X}")
    def _bcd_repr(self, ins):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        vx = self.v_regs[ins.x]
        self.mem[self.idx] = vx // 100
        self.mem[self.idx + 1] = (vx // 10) % 10
        self.mem[self.idx + 2] = vx % 10
        return PcAction.NEXT

    @asm("LD [I], V{x:X}")
    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        for i in range(ins.x + 1):
            self.mem[self.idx + i] = self.v_regs[i]
        return PcAction.NEXT

    @asm("LD V{x:X}, [I]")
    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        for i in range(ins.x + 1):
            self.v_regs[i] = self.mem[self.idx + i]
        return PcAction.NEXT

    def lookup(self, ins):
        """return the handler of a decoded instruction, None when the opcode is unknown"""
        handler = self.instructions.get(ins.msn)
        if isinstance(handler, dict):
            handler = handler.get(getattr(ins, self.family_keys[ins.msn]))
            if handler is None and ins.msn == 0x0:
                handler = self._sys
        return handler

    def disassemble(self, opcode):
        ins = decode(opcode)
        handler = self.lookup(ins)
        if handler is None:
            return f"DATA 0x{opcode:04x}"
        return handler.mnemonic.format(**ins._asdict())

    def fetch(self):
        """each instruction is two bytes long, most significant byte first"""
        return self.mem[self.pc] << 8 | self.mem[self.pc + 1]

    def _advance(self, action):
        if action in (PcAction.NEXT, PcAction.SKIP):
            self.pc = (self.pc + action.value) & ADDRESS_MASK

    def cycle(self):
        """fetch, decode and execute one instruction, unless waiting for a key"""
        if self.waiting:
            return
        ins = decode(self.fetch())
        handler = self.lookup(ins)
        if handler is None:
            warn(f"unknown opcode 0x{ins.opcode:04x} at 0x{self.pc:04x}, skipping it")
            action = PcAction.NEXT
        else:
            action = handler(ins)
        self._advance(action)

    def set_keys(self, states):
        """refresh the keypad, releasing a pending LD Vx, K on a key going down"""
        states = [bool(s) for s in states[:KEY_COUNT]]
        pressed = [k for k in range(KEY_COUNT) if states[k] and not self.keys[k]]
        self.keys = states
        if self.waiting and pressed:
            self.v_regs[self.waiting_for_key] = pressed[0]
            self.waiting_for_key = None
            self._advance(PcAction.NEXT)

    def tick_timers(self):
        """delay/sound timers (dt/st), called at 60Hz"""
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1

    def draw_font_test(self):
        """draw all the hex glyphs in a 4x4 grid, useful to check the font and the sprite drawing"""
        for digit in range(16):
            col, row = digit % 4, digit // 4
            self.idx = FONT_START_ADDRESS + digit * FONT_GLYPH_SIZE
            self.v_regs[0x0], self.v_regs[0x1] = 1 + col * 5, 1 + row * 6
            self._to_screen(decode(0xD015))


# ******************** SCHEDULER SECTION
class Scheduler:
    """paces input polling, cpu cycles and timer/render ticks independently

    - keys are polled on every tick
    - one instruction runs whenever 1/cpu_hz seconds went by since the last one
    - timers decay and the screen is flushed whenever 1/timer_hz seconds went by since the last frame
    """

    def __init__(self, chip, keypad=None, screen=None, cpu_hz=CPU_HZ, timer_hz=TIMER_HZ, clock=time.perf_counter):
        if cpu_hz <= 0 or timer_hz <= 0:
            raise ValueError("cpu and timer rates must be positive")
        self.chip = chip
        self.keypad = keypad
        self.screen = screen
        self.cycle_time = 1.0 / cpu_hz
        self.frame_time = 1.0 / timer_hz
        self.clock = clock
        self.last_cycle = None
        self.last_frame = None

    @staticmethod
    def _next_deadline(last, period, now):
        """step by a whole period to keep the rate exact, resyncing when more than one period late"""
        if last is None or now - last >= 2 * period:
            return now
        return last + period

    def tick(self):
        now = self.clock()
        if self.keypad:
            self.chip.set_keys(self.keypad.poll())
        if self.last_cycle is None or now - self.last_cycle >= self.cycle_time:
            self.last_cycle = self._next_deadline(self.last_cycle, self.cycle_time, now)
            self.chip.cycle()
        if self.last_frame is None or now - self.last_frame >= self.frame_time:
            self.last_frame = self._next_deadline(self.last_frame, self.frame_time, now)
            self.chip.tick_timers()
            if self.screen:
                self.screen.render(self.chip)

    def run(self, should_stop):
        while not should_stop():
            self.tick()
