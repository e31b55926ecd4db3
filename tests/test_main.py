import json

import pytest

import main


@pytest.fixture
def dsn(tmp_path):
    return f"sqlite:///{tmp_path / 'cli.db'}"


def run_cli(capsys, *argv):
    code = main.main(list(argv))
    out, err = capsys.readouterr()
    return code, out, err


class TestCommandLine:
    def test_create_then_status(self, capsys, dsn):
        code, out, _ = run_cli(capsys, '--dsn', dsn, 'create', 'example.com', '1')
        assert code == 0
        crawl_request_id = json.loads(out)['id']

        code, out, _ = run_cli(capsys, '--dsn', dsn, 'status', str(crawl_request_id))
        assert code == 0
        assert json.loads(out)['url'] == 'http://example.com'

    def test_results_of_unfinished_request(self, capsys, dsn):
        run_cli(capsys, '--dsn', dsn, 'create', 'http://example.com/', '1')
        code, _, err = run_cli(capsys, '--dsn', dsn, 'results', '1')
        assert code == 1
        assert 'not yet completed' in err

    def test_unknown_request(self, capsys, dsn):
        code, _, err = run_cli(capsys, '--dsn', dsn, 'status', '12')
        assert code == 1
        assert 'no crawl request' in err

    def test_invalid_levels(self, capsys, dsn):
        code, _, _ = run_cli(capsys, '--dsn', dsn, 'create', 'http://example.com/', '-1')
        assert code == 1

    def test_missing_config_file(self, capsys, tmp_path):
        code, out, _ = run_cli(capsys, '--config', str(tmp_path / 'nope.yaml'), 'status', '1')
        assert code == 1
        assert 'not found' in out

    def test_invalid_override(self, capsys, dsn):
        code, out, _ = run_cli(capsys, '--dsn', dsn, 'crawler', '--max-workers', '0')
        assert code == 1
        assert 'max_workers' in out


def test_overrides_take_precedence():
    args = main.build_parser().parse_args(
        ['--dsn', 'postgresql://crawler@db/crawler', 'crawler', '--max-workers', '7', '--mode', 'pool']
    )
    config = main.apply_overrides(main.load_config(None), args)
    assert config.database.url == 'postgresql://crawler@db/crawler'
    assert config.crawler.max_workers == 7
    assert config.crawler.scheduling_mode == 'pool'
