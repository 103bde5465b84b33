#!/usr/bin/env python3
"""
stemc.py
Single-file compiler for the stem language (lexer → recursive-descent parser
→ tree-walking x86-64 code generator), plus a reference interpreter and a
small command line driver.

A stem program is a list of `;`-terminated statements built from unsigned
64-bit integers, variables, `+ - * /`, unary `-`, assignment and `put`:

    x = 2 + 3 * 4;
    put x;
    put (x - 4) / 2;

The output is a NASM module for x86-64 Linux; assemble with
`nasm -felf64 output.asm && ld output.o`.
"""

import argparse
import logging
import re
import sys
from collections import namedtuple
from dataclasses import dataclass

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

# =====================================================
# CONFIG
# =====================================================
# Scratch pool. rax/rdx (mul/div accumulator pair) and rdi (first argument)
# are never handed out.
REG_NAMES = ("rbx", "r10", "r11", "r12", "r13", "r14", "r15")
DEFAULT_OUTPUT = "output.asm"
U64_MASK = (1 << 64) - 1


@dataclass
class CompilerConfig:
    """Knobs shared by the CLI and the HTTP service."""
    registers: tuple = REG_NAMES
    output_path: str = DEFAULT_OUTPUT

# =====================================================
# ERRORS
# =====================================================
class CompileError(Exception):
    phase = "Compile"

    def __init__(self, message, position=None, phase=None):
        super().__init__(message)
        self.message = message
        self.position = position
        if phase is not None:
            self.phase = phase

    def __str__(self):
        if self.position is not None:
            p = self.position
            return f"{self.phase} error ({p.file}:{p.line}:{p.col}): {self.message}"
        return f"{self.phase} error: {self.message}"


class LexError(CompileError):
    phase = "Lexical"


class ParseError(CompileError):
    phase = "Syntax"


class CodegenError(CompileError):
    """Internal-consistency failures and unsupported constructs."""
    phase = "Codegen"


class RegisterPoolExhausted(CodegenError):
    pass


class EvaluationError(CompileError):
    phase = "Runtime"

# =====================================================
# LEXER
# =====================================================
Position = namedtuple('Position', ['line', 'col', 'file'])
Token = namedtuple('Token', ['type', 'lexeme', 'literal', 'pos'])


class Lexer:
    KEYWORDS = {'put': 'PUT'}
    SYMBOLS = {
        '+': 'PLUS', '-': 'MINUS', '*': 'MULT', '/': 'DIV', '=': 'ASSIGN',
        '(': 'LPAREN', ')': 'RPAREN', ';': 'SEMICOLON',
    }
    # symbols whose literal payload is the operator itself
    OPERATORS = set('+-*/=')

    token_specification = [
        ("NUMBER",   r'[0-9]+'),
        ("WORD",     r'[A-Za-z][A-Za-z0-9]*'),
        ("SYMBOL",   r'[-+*/=();]'),
        ("NEWLINE",  r'\n'),
        ("SKIP",     r'[^\S\n]+'),
        ("MISMATCH", r'.'),
    ]
    tok_regex = '|'.join(f'(?P<{n}>{p})' for n, p in token_specification)
    master_re = re.compile(tok_regex)

    def __init__(self, code, filename='<input>'):
        self.code = code
        self.filename = filename
        self.lineno = 1
        self.tokens = []
        self._tokenize()

    def _tokenize(self):
        line_start = 0
        for mo in self.master_re.finditer(self.code):
            kind = mo.lastgroup
            val = mo.group()
            pos = Position(self.lineno, mo.start() - line_start + 1, self.filename)
            if kind == "NUMBER":
                self.tokens.append(Token('NUMBER', val, self._integer(val, pos), pos))
            elif kind == "WORD":
                if val in Lexer.KEYWORDS:
                    self.tokens.append(Token(Lexer.KEYWORDS[val], val, val, pos))
                else:
                    self.tokens.append(Token('ID', val, val, pos))
            elif kind == "SYMBOL":
                literal = val if val in Lexer.OPERATORS else None
                self.tokens.append(Token(Lexer.SYMBOLS[val], val, literal, pos))
            elif kind == "NEWLINE":
                self.lineno += 1
                line_start = mo.end()
            elif kind == "SKIP":
                pass
            else:
                raise LexError(f"unexpected character {val!r}", pos)
        end = Position(self.lineno, len(self.code) - line_start + 1, self.filename)
        self.tokens.append(Token('EOF', '', None, end))

    @staticmethod
    def _integer(lexeme, pos):
        value = int(lexeme)
        if value > U64_MASK:
            # out of range literals degrade to zero rather than failing
            logger.warning("%s:%d:%d: integer literal %s does not fit in 64 bits, using 0",
                           pos.file, pos.line, pos.col, lexeme)
            return 0
        return value

    def peek_all(self):
        return list(self.tokens)


def tokenize(code, filename='<input>'):
    return Lexer(code, filename).peek_all()

# =====================================================
# AST NODES
# =====================================================
class Node:
    pos = None

    def __repr__(self):
        return f"{type(self).__name__}<{format_ast(self)}>"


class IntegerLiteral(Node):
    def __init__(self, value, pos=None):
        self.value = value
        self.pos = pos


class Identifier(Node):
    def __init__(self, name, pos=None):
        self.name = name
        self.pos = pos


class UnaryOp(Node):
    def __init__(self, op, operand, pos=None):
        self.op = op            # '-' | 'put'
        self.operand = operand
        self.pos = pos


class BinaryOp(Node):
    def __init__(self, op, left, right, pos=None):
        self.op = op            # '+' | '-' | '*' | '/'
        self.left = left
        self.right = right
        self.pos = pos


class Assign(Node):
    def __init__(self, name, value, pos=None):
        self.name = name
        self.value = value
        self.pos = pos


def format_ast(node):
    """Render a node fully parenthesized, e.g. ``(1 + (2 * 3))``."""
    if isinstance(node, IntegerLiteral):
        return str(node.value)
    if isinstance(node, Identifier):
        return node.name
    if isinstance(node, UnaryOp):
        if node.op == 'put':
            return f"put {format_ast(node.operand)}"
        return f"{node.op}{format_ast(node.operand)}"
    if isinstance(node, BinaryOp):
        return f"({format_ast(node.left)} {node.op} {format_ast(node.right)})"
    if isinstance(node, Assign):
        return f"({node.name} = {format_ast(node.value)})"
    raise CodegenError(f"malformed AST node {type(node).__name__}")

# =====================================================
# PARSER (recursive-descent, one statement at a time)
# =====================================================
def split_statements(tokens):
    """Group tokens into ``(statement_tokens, terminator_position)`` pairs."""
    statements = []
    current = []
    for tok in tokens:
        if tok.type == 'EOF':
            break
        if tok.type == 'SEMICOLON':
            statements.append((current, tok.pos))
            current = []
        else:
            current.append(tok)
    if current:
        raise ParseError("statement is not terminated by `;`", current[0].pos)
    return statements


class Parser:
    """
    Grammar, lowest precedence first:

        A := E ( '=' A )?
        E := T ( ('+' | '-') T )*
        T := F ( ('*' | '/') F )*
        F := INTEGER | IDENTIFIER | 'put' A | '-' F | '(' A ')'
    """

    def __init__(self, tokens, end=None):
        self.tokens = tokens
        self.end = end if end is not None else (tokens[-1].pos if tokens else None)
        self.pointer = -1       # index of the last consumed token
        self.next_token = self._token_at(0)

    def _token_at(self, idx):
        if idx < len(self.tokens):
            return self.tokens[idx]
        return Token('EOF', '', None, self.end)

    def peek(self):
        return self.next_token

    def advance(self):
        tok = self.next_token
        self.pointer += 1
        self.next_token = self._token_at(self.pointer + 1)
        return tok

    def parse(self):
        try:
            node = self.assignment()
        except RecursionError:
            start = self.tokens[0].pos if self.tokens else self.end
            raise ParseError("expression nested too deeply", start) from None
        tok = self.peek()
        if tok.type != 'EOF':
            raise ParseError(f"unexpected token `{tok.lexeme}`", tok.pos)
        return node

    def assignment(self):
        node = self.additive()
        if self.peek().type == 'ASSIGN':
            tok = self.advance()
            if not isinstance(node, Identifier):
                raise ParseError("invalid assignment target", tok.pos)
            value = self.assignment()
            node = Assign(node.name, value, node.pos)
        return node

    def additive(self):
        node = self.multiplicative()
        while self.peek().type in ('PLUS', 'MINUS'):
            tok = self.advance()
            right = self.multiplicative()
            node = BinaryOp(tok.literal, node, right, tok.pos)
        return node

    def multiplicative(self):
        node = self.factor()
        while self.peek().type in ('MULT', 'DIV'):
            tok = self.advance()
            right = self.factor()
            node = BinaryOp(tok.literal, node, right, tok.pos)
        return node

    def factor(self):
        tok = self.peek()
        if tok.type == 'NUMBER':
            self.advance()
            return IntegerLiteral(tok.literal, tok.pos)
        if tok.type == 'ID':
            self.advance()
            return Identifier(tok.literal, tok.pos)
        if tok.type == 'PUT':
            self.advance()
            return UnaryOp('put', self.assignment(), tok.pos)
        if tok.type == 'MINUS':
            self.advance()
            return UnaryOp('-', self.factor(), tok.pos)
        if tok.type == 'LPAREN':
            self.advance()
            node = self.assignment()
            if self.peek().type != 'RPAREN':
                raise ParseError("`(` is never closed", tok.pos)
            self.advance()
            return node
        if tok.type == 'EOF':
            raise ParseError("unexpected end of statement", tok.pos)
        raise ParseError(f"unexpected token `{tok.lexeme}`", tok.pos)


def parse(tokens):
    return [Parser(stmt, end).parse() for stmt, end in split_statements(tokens)]

# =====================================================
# SCRATCH REGISTERS, LABELS, SYMBOLS
# =====================================================
class ScratchRegisters:
    def __init__(self, names=REG_NAMES):
        self.names = tuple(names)
        self.in_use = [False] * len(self.names)
        self.allocations = 0

    def allocate(self):
        for slot, busy in enumerate(self.in_use):
            if not busy:
                self.in_use[slot] = True
                self.allocations += 1
                logger.debug("allocate %s", self.names[slot])
                return slot
        raise RegisterPoolExhausted(
            f"no scratch register available, all {len(self.names)} are live")

    def free(self, slot):
        if not self.in_use[slot]:
            raise CodegenError(f"scratch register {self.names[slot]} freed while not in use")
        self.in_use[slot] = False
        logger.debug("free %s", self.names[slot])

    def name(self, slot):
        return self.names[slot]

    def available(self):
        return self.in_use.count(False)


class LabelGenerator:
    def __init__(self):
        self.counter = 0

    def next(self):
        self.counter += 1
        return self.counter

    @staticmethod
    def name(number):
        return f".L{number}"


class SymbolTable:
    """name -> storage index, in order of first assignment."""

    def __init__(self):
        self.slots = {}

    def lookup(self, name):
        return self.slots.get(name)

    def define(self, name):
        if name not in self.slots:
            self.slots[name] = len(self.slots)
        return self.slots[name]

    @staticmethod
    def label(index):
        return f"var{index}"

    def __len__(self):
        return len(self.slots)

# =====================================================
# RUNTIME (fixed preamble / epilogue)
# =====================================================
INDENT = " " * 8

RUNTIME_PREAMBLE = r'''BITS 64
DEFAULT REL
%define SYS_WRITE 1
%define SYS_EXIT 60
%define STDOUT 1
segment .text
global _start

; put(rdi): write rdi as unsigned decimal plus '\n' to stdout.
; Leaves every scratch register intact (syscall clobbers r11).
put:
        push   rbp
        mov    rbp, rsp
        sub    rsp, 32
        push   r11
        mov    rax, rdi
        mov    rcx, 10
        lea    rsi, [rbp-1]
        mov    byte [rsi], 10
.digit:
        xor    edx, edx
        div    rcx
        add    dl, '0'
        dec    rsi
        mov    [rsi], dl
        test   rax, rax
        jnz    .digit
        mov    rdx, rbp
        sub    rdx, rsi
        mov    eax, SYS_WRITE
        mov    edi, STDOUT
        syscall
        pop    r11
        leave
        ret

_start:'''

RUNTIME_EPILOGUE = r'''.LEND:
        mov    rdi, 0
        mov    rax, SYS_EXIT
        syscall'''


def instr(op, *operands):
    if not operands:
        return f"{INDENT}{op}\n"
    return f"{INDENT}{op:<7}{', '.join(str(o) for o in operands)}\n"

# =====================================================
# CODE GENERATOR
# =====================================================
class CodeGenerator:
    """
    Postorder walk over each statement. ``gen_expr`` returns ``(slot, code)``
    where ``slot`` is the scratch register index holding the value, or None
    for statements that only have side effects (``put``).
    """

    def __init__(self, config=None):
        self.config = config or CompilerConfig()
        self.labels = LabelGenerator()
        self.symbols = SymbolTable()

    def generate(self, program):
        parts = [RUNTIME_PREAMBLE, "\n"]
        for node in program:
            # fresh pool per statement: no register lives across statements
            regs = ScratchRegisters(self.config.registers)
            _, code = self.gen_statement(node, regs)
            parts.append(code)
        parts.append(RUNTIME_EPILOGUE)
        parts.append("\n")
        if self.symbols:
            parts.append("\nsegment .bss\n")
            for name, index in self.symbols.slots.items():
                parts.append(f"{SymbolTable.label(index)}: resq 1    ; {name}\n")
        return "".join(parts)

    def gen_statement(self, node, regs):
        label = LabelGenerator.name(self.labels.next())
        try:
            logger.debug("statement %s: %s", label, format_ast(node))
            slot, code = self.gen_expr(node, regs)
        except RecursionError:
            raise CodegenError("expression nested too deeply", node.pos) from None
        return slot, f"{label}:\n{code}"

    def gen_value(self, node, regs):
        slot, code = self.gen_expr(node, regs)
        if slot is None:
            raise CodegenError("`put` does not produce a value", node.pos)
        return slot, code

    def gen_expr(self, node, regs):
        if isinstance(node, IntegerLiteral):
            slot = regs.allocate()
            return slot, instr('mov', regs.name(slot), node.value)

        if isinstance(node, Identifier):
            index = self.symbols.lookup(node.name)
            if index is None:
                raise CodegenError(f"undefined variable `{node.name}`", node.pos)
            slot = regs.allocate()
            return slot, instr('mov', regs.name(slot), f"[{SymbolTable.label(index)}]")

        if isinstance(node, Assign):
            slot, code = self.gen_value(node.value, regs)
            # defined after the value so `x = x + 1` needs an earlier `x`
            index = self.symbols.define(node.name)
            code += instr('mov', f"[{SymbolTable.label(index)}]", regs.name(slot))
            return slot, code

        if isinstance(node, UnaryOp):
            return self.gen_unary(node, regs)

        if isinstance(node, BinaryOp):
            return self.gen_binary(node, regs)

        raise CodegenError(f"malformed AST node {type(node).__name__}")

    def gen_unary(self, node, regs):
        slot, code = self.gen_value(node.operand, regs)
        reg = regs.name(slot)
        if node.op == '-':
            code += instr('neg', reg)
            return slot, code
        if node.op == 'put':
            code += instr('mov', 'rdi', reg)
            code += instr('call', 'put')
            regs.free(slot)
            return None, code
        raise CodegenError(f"unsupported unary operator `{node.op}`", node.pos)

    def gen_binary(self, node, regs):
        left, code = self.gen_value(node.left, regs)
        right, code2 = self.gen_value(node.right, regs)
        code += code2
        lreg, rreg = regs.name(left), regs.name(right)

        if node.op == '+':
            code += instr('add', rreg, lreg)
            regs.free(left)
            return right, code
        if node.op == '-':
            code += instr('sub', lreg, rreg)
            regs.free(right)
            return left, code
        if node.op == '*':
            code += instr('mov', 'rax', rreg)
            code += instr('mul', lreg)
            code += instr('mov', rreg, 'rax')
            regs.free(left)
            return right, code
        if node.op == '/':
            # unsigned; a zero divisor traps at run time
            code += instr('xor', 'edx', 'edx')
            code += instr('mov', 'rax', lreg)
            code += instr('div', rreg)
            code += instr('mov', lreg, 'rax')
            regs.free(right)
            return left, code
        raise CodegenError(f"unsupported binary operator `{node.op}`", node.pos)


def generate(program, config=None):
    return CodeGenerator(config).generate(program)

# =====================================================
# REFERENCE INTERPRETER
# =====================================================
def evaluate(program):
    """Run the AST list directly; returns the lines `put` would print."""
    memory = {}
    outputs = []

    def value_of(node):
        result = run(node)
        if result is None:
            raise EvaluationError("`put` does not produce a value", node.pos)
        return result

    def run(node):
        if isinstance(node, IntegerLiteral):
            return node.value
        if isinstance(node, Identifier):
            if node.name not in memory:
                raise EvaluationError(f"undefined variable `{node.name}`", node.pos)
            return memory[node.name]
        if isinstance(node, Assign):
            memory[node.name] = value_of(node.value)
            return memory[node.name]
        if isinstance(node, UnaryOp):
            operand = value_of(node.operand)
            if node.op == 'put':
                outputs.append(str(operand))
                return None
            return -operand & U64_MASK
        if isinstance(node, BinaryOp):
            a = value_of(node.left)
            b = value_of(node.right)
            if node.op == '+':
                return (a + b) & U64_MASK
            if node.op == '-':
                return (a - b) & U64_MASK
            if node.op == '*':
                return (a * b) & U64_MASK
            if node.op == '/':
                if b == 0:
                    raise EvaluationError("division by zero", node.pos)
                return a // b
        raise EvaluationError(f"malformed AST node {type(node).__name__}")

    for stmt in program:
        try:
            run(stmt)
        except RecursionError:
            raise EvaluationError("expression nested too deeply", stmt.pos) from None
    return outputs

# =====================================================
# COMPILER DRIVER
# =====================================================
def compile_program(code, filename='<input>', config=None):
    """Source text to assembly text; raises CompileError on the first problem."""
    tokens = tokenize(code, filename)
    logger.info("Program tokenized (%d tokens)", len(tokens))
    program = parse(tokens)
    logger.info("Program parsed (%d statements)", len(program))
    asm = generate(program, config)
    logger.info("Code generated (%d lines)", asm.count("\n") + 1)
    return asm


def compile_source(code, filename='<input>', config=None):
    """Stage-by-stage results for tooling; compile errors land in 'errors'."""
    result = {
        'tokens': [],
        'ast': [],
        'asm': [],
        'output': [],
        'errors': [],
        'symbol_table': {},
    }

    try:
        result['tokens'] = tokenize(code, filename)
        result['ast'] = parse(result['tokens'])

        gen = CodeGenerator(config)
        result['asm'] = gen.generate(result['ast']).splitlines()
        result['symbol_table'] = dict(gen.symbols.slots)

        result['output'] = evaluate(result['ast'])
    except CompileError as e:
        logger.info("compilation of %s failed: %s", filename, e)
        result['errors'] = [str(e)]

    return result

# =====================================================
# COMMAND LINE
# =====================================================
def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="stemc",
        description="Compile a stem source file to x86-64 NASM assembly")
    parser.add_argument("source", help="stem source file")
    parser.add_argument("-o", "--output", default=DEFAULT_OUTPUT,
                        help=f"assembly output file (default: {DEFAULT_OUTPUT})")
    parser.add_argument("--emit", choices=("asm", "tokens", "ast", "run"), default="asm",
                        help="what to produce; everything but asm goes to stdout")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="log compiler stages (-vv for register traffic)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def configure_logging(verbosity):
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    logging.basicConfig(level=level, stream=sys.stderr,
                        format="%(levelname)s - %(name)s - %(message)s")


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.verbose)
    config = CompilerConfig(output_path=args.output)

    try:
        with open(args.source, encoding="utf-8") as f:
            code = f.read()
        logger.info("Program read from %s", args.source)

        if args.emit == "tokens":
            for tok in tokenize(code, args.source):
                print(f"{tok.pos.line}:{tok.pos.col}\t{tok.type}\t{tok.lexeme}")
        elif args.emit == "ast":
            for node in parse(tokenize(code, args.source)):
                print(format_ast(node))
        elif args.emit == "run":
            for line in evaluate(parse(tokenize(code, args.source))):
                print(line)
        else:
            asm = compile_program(code, args.source, config)
            # written only once the whole module exists
            with open(config.output_path, "w", encoding="utf-8") as f:
                f.write(asm)
            logger.info("Assembly written to %s", config.output_path)
    except (OSError, UnicodeDecodeError, CompileError) as e:
        print(f"stemc: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
