import logging

from ecmocohort.utils.logging_config import get_logger, setup_logging


class TestLogging:
    def test_get_logger_is_namespaced(self):
        assert get_logger('cohort.sofa').name == 'ecmocohort.cohort.sofa'

    def test_setup_logging_replaces_handlers(self):
        setup_logging('DEBUG')
        logger = setup_logging('WARNING')
        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1

    def test_setup_logging_writes_file(self, tmp_path):
        logger = setup_logging(logging.INFO, log_dir=tmp_path / 'logs')
        get_logger('tests').info('hello from tests')
        for handler in logger.handlers:
            handler.flush()

        log_files = list((tmp_path / 'logs').glob('ecmocohort_*.log'))
        assert len(log_files) == 1
        assert 'hello from tests' in log_files[0].read_text()

        for handler in logger.handlers:
            handler.close()
        logger.handlers = []
