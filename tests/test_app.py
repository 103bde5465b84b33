import stemc
from app import ast_to_dict


def test_compile_endpoint(client):
    resp = client.post("/compile", json={"code": "put 1+2;"})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["errors"] == []
    assert data["output"] == ["3"]
    assert data["tokens"][0] == {"type": "PUT", "lexeme": "put", "value": "put",
                                 "line": 1, "column": 1}
    assert [t["type"] for t in data["tokens"]] == ["PUT", "NUMBER", "PLUS", "NUMBER", "SEMICOLON"]
    assert data["ast"][0]["type"] == "UnaryOp"
    assert data["ast"][0]["operand"]["op"] == "+"
    assert "        call   put" in data["assembly"]
    assert data["symbol_table"] == {}


def test_compile_endpoint_reports_compile_errors(client):
    resp = client.post("/compile", json={"code": "(1+2;", "filename": "web.stem"})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["errors"] == ["Syntax error (web.stem:1:1): `(` is never closed"]
    assert data["assembly"] == []


def test_compile_endpoint_symbol_table(client):
    data = client.post("/compile", json={"code": "a = 1; b = a + 1; put b;"}).get_json()
    assert data["symbol_table"] == {"a": 0, "b": 1}
    assert data["output"] == ["2"]


def test_compile_endpoint_rejects_bad_body(client):
    assert client.post("/compile", data="not json").status_code == 400
    assert client.post("/compile", json={"code": 12}).status_code == 400
    assert client.post("/compile", json=["put 1;"]).status_code == 400
    assert client.post("/compile", json={"code": "put 1;", "filename": 3}).status_code == 400


def test_compile_endpoint_unexpected_failure(client, monkeypatch):
    def boom(code, filename):
        raise RuntimeError("boom")
    monkeypatch.setattr(stemc, "compile_source", boom)
    resp = client.post("/compile", json={"code": "put 1;"})
    assert resp.status_code == 500
    assert resp.get_json()["errors"] == ["Unexpected error: boom"]


def test_cors_headers(client):
    resp = client.post("/compile", json={"code": "put 1;"},
                       headers={"Origin": "http://localhost:3000"})
    assert "Access-Control-Allow-Origin" in resp.headers


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}


def test_ast_to_dict(parse_source):
    [stmt] = parse_source("x = -2 * y;")
    assert ast_to_dict(stmt) == {
        "type": "Assign", "line": 1, "column": 1, "name": "x",
        "value": {
            "type": "BinaryOp", "line": 1, "column": 8, "op": "*",
            "left": {"type": "UnaryOp", "line": 1, "column": 5, "op": "-",
                     "operand": {"type": "IntegerLiteral", "line": 1, "column": 6, "value": 2}},
            "right": {"type": "Identifier", "line": 1, "column": 10, "name": "y"},
        },
    }
    assert ast_to_dict(None) is None


def test_compile_endpoint_deep_nesting(client):
    resp = client.post("/compile", json={"code": "put " + "-" * 5000 + "1;"})
    assert resp.status_code == 200
    assert resp.get_json()["errors"] == ["Syntax error (<input>:1:1): expression nested too deeply"]
