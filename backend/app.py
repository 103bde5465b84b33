import logging

from flask import Flask, request, jsonify
from flask_cors import CORS
import stemc

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)  # allow cross-origin requests


def ast_to_dict(node):
    """
    Serialize AST to dict recursively
    """
    if node is None:
        return None
    d = {"type": type(node).__name__}
    if node.pos is not None:
        d["line"] = node.pos.line
        d["column"] = node.pos.col
    if isinstance(node, stemc.IntegerLiteral):
        d["value"] = node.value
    elif isinstance(node, stemc.Identifier):
        d["name"] = node.name
    elif isinstance(node, stemc.Assign):
        d["name"] = node.name
        d["value"] = ast_to_dict(node.value)
    elif isinstance(node, stemc.UnaryOp):
        d["op"] = node.op
        d["operand"] = ast_to_dict(node.operand)
    elif isinstance(node, stemc.BinaryOp):
        d["op"] = node.op
        d["left"] = ast_to_dict(node.left)
        d["right"] = ast_to_dict(node.right)
    return d


def token_to_dict(token):
    return {
        "type": token.type,
        "lexeme": token.lexeme,
        "value": token.literal,
        "line": token.pos.line,
        "column": token.pos.col,
    }


def empty_response(errors):
    return {
        "tokens": [],
        "ast": [],
        "assembly": [],
        "output": [],
        "errors": errors,
        "symbol_table": {},
    }


@app.route("/compile", methods=["POST"])
def compile_code():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not isinstance(data.get("code"), str):
        return jsonify(empty_response(["request body must be a JSON object with a string 'code'"])), 400
    filename = data.get("filename", "<input>")
    if not isinstance(filename, str):
        return jsonify(empty_response(["'filename' must be a string"])), 400

    try:
        result = stemc.compile_source(data["code"], filename)

        try:
            ast = [ast_to_dict(stmt) for stmt in result['ast']]
        except RecursionError:
            ast = []

        response = {
            "tokens": [token_to_dict(t) for t in result['tokens'] if t.type != 'EOF'],
            "ast": ast,
            "assembly": result['asm'],
            "output": result['output'],
            "errors": result['errors'],
            "symbol_table": result['symbol_table'],
        }
        return jsonify(response)
    except Exception as e:
        logger.exception("unexpected failure compiling %s", filename)
        return jsonify(empty_response([f"Unexpected error: {str(e)}"])), 500


@app.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})


if __name__ == "__main__":
    app.run()
