from shelter_master.results.mapper import ResultMapper, format_time, split_time

__all__ = ['ResultMapper', 'format_time', 'split_time']
