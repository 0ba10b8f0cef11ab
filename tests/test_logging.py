import json
import logging

from cratepack import logging as logging_mod
from cratepack.logging import JSONLineFormatter, ModuleLevelFilter, _parse_size


def _record(msg="hello", level=logging.INFO, module="resolver"):
    rec = logging.LogRecord("cratepack", level, __file__, 1, msg, None, None)
    rec.cratepack_module = module
    return rec


def test_adapter_tags_module(caplog):
    log = logging_mod.get_logger("unit")
    with caplog.at_level(logging.INFO, logger="cratepack"):
        log.info("tagged")
    assert caplog.records[-1].cratepack_module == "unit"


def test_jsonl_formatter():
    obj = json.loads(JSONLineFormatter().format(_record()))
    assert obj["module"] == "resolver"
    assert obj["message"] == "hello"
    assert obj["level"] == "INFO"


def test_module_level_filter():
    f = ModuleLevelFilter({"resolver": "warning"})
    assert not f.filter(_record(level=logging.INFO))
    assert f.filter(_record(level=logging.ERROR))
    assert f.filter(_record(level=logging.DEBUG, module="packager"))


def test_parse_size():
    assert _parse_size("10M") == 10 * 1024 * 1024
    assert _parse_size("512") == 512
    assert _parse_size("lots") is None


def test_metrics_count_levels():
    before = logging_mod.get_metrics()["WARNING"]
    logging_mod.get_logger("unit").warning("counted")
    assert logging_mod.get_metrics()["WARNING"] == before + 1
